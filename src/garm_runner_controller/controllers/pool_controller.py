"""
GARM runner pool controller.

Periodically aligns the idle capacity of every known pool: fetch a fresh
runner snapshot through the shared GARM session, compute the deletion set,
and delete the selected runners one by one.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Sequence

import structlog
from prometheus_client import start_http_server

from ..models.config import ControllerConfiguration, PoolConfiguration, PoolSource
from ..models.runner import AlignmentOutcome, DeletionReport, Runner
from ..utils.garm_client import GarmAuthenticationError, GarmError
from ..utils.metrics import IDLE_RUNNERS, RUNNER_DELETIONS
from ..utils.session import GarmSession
from .alignment import AlignmentPipeline


class PoolSourceProtocol(Protocol):
    async def list_pools(self) -> List[PoolConfiguration]:
        ...


class StaticPoolSource:
    """Pools declared in the controller configuration."""

    def __init__(self, pools: Sequence[PoolConfiguration]) -> None:
        self.pools = list(pools)

    async def list_pools(self) -> List[PoolConfiguration]:
        return list(self.pools)


class GarmRunnerController:
    """
    Idle runner alignment for GARM pools.

    All pools share one :class:`GarmSession`; at most
    ``operator.pool_concurrency`` pools are aligned at the same time.
    """

    def __init__(self,
                 config: ControllerConfiguration,
                 session: Optional[GarmSession] = None,
                 pool_source: Optional[PoolSourceProtocol] = None,
                 logger: Any = None) -> None:
        """
        Initialize the controller.

        Args:
            config: Validated controller configuration
            session: Shared GARM session, built from ``config.garm`` if omitted
            pool_source: Where pools are listed from, chosen from
                ``config.operator.pool_source`` if omitted
            logger: Structured logger instance
        """
        self.config = config
        self.logger = (logger or structlog.get_logger()).bind(component="runner_controller")

        self.session = session or GarmSession.from_config(config.garm, logger=self.logger)
        self.pool_source = pool_source or self._default_pool_source()

        self._semaphore = asyncio.Semaphore(config.operator.pool_concurrency)
        self._running = False
        self._shutdown_event = asyncio.Event()
        self.last_sync: Optional[datetime] = None

        self.logger.info(
            "GARM runner controller initialized",
            server=config.garm.server,
            pool_source=config.operator.pool_source.value,
            pools=[pool.name for pool in config.pools]
        )

    def _default_pool_source(self) -> PoolSourceProtocol:
        if self.config.operator.pool_source == PoolSource.KUBERNETES:
            from ..utils.kubernetes_client import KubernetesPoolSource, load_kubernetes_config

            load_kubernetes_config()
            return KubernetesPoolSource(
                namespace=self.config.operator.watch_namespace,
                logger=self.logger
            )
        return StaticPoolSource(self.config.pools)

    async def fetch_pool_runners(self, pool_id: str) -> List[Runner]:
        """Fresh snapshot of the runners of a pool."""
        return await self.session.ensure_auth(
            lambda token: self.session.client.list_pool_instances(pool_id, token),
            "instances.ListPool",
            timeout=self.config.operator.call_timeout
        )

    async def delete_runners(self, pool_name: str, names: Sequence[str]) -> DeletionReport:
        """
        Delete each runner independently.

        A failure on one runner is recorded and the next one is attempted.
        Failing to authenticate at all aborts the pass.

        Raises:
            GarmAuthenticationError: If GARM login fails
        """
        report = DeletionReport()
        for name in names:
            self.logger.info("Removing runner", pool=pool_name, runner=name)
            try:
                await self.session.ensure_auth(
                    lambda token, name=name: self.session.client.delete_instance(name, token),
                    "instances.Delete",
                    timeout=self.config.operator.call_timeout
                )
            except GarmAuthenticationError:
                RUNNER_DELETIONS.labels(pool=pool_name, result="failure").inc()
                raise
            except GarmError as e:
                self.logger.error("Unable to delete runner", pool=pool_name, runner=name, error=str(e))
                RUNNER_DELETIONS.labels(pool=pool_name, result="failure").inc()
                report.failed[name] = str(e)
                continue

            RUNNER_DELETIONS.labels(pool=pool_name, result="success").inc()
            report.deleted.append(name)
        return report

    async def align_pool(self,
                         pool: PoolConfiguration,
                         dry_run: bool = False,
                         now: Optional[datetime] = None) -> AlignmentOutcome:
        """
        Bring the idle runners of ``pool`` down to its ``min_idle_runners``.

        Args:
            pool: Pool to align
            dry_run: Compute the deletion set without deleting anything
            now: Reference time for idle age, defaults to the current time

        Returns:
            Snapshot counts, the selected runners and the deletion report
        """
        policy = pool.policy(self.config.operator.min_idle_age)
        runners = await self.fetch_pool_runners(pool.id)

        pipeline = AlignmentPipeline(policy, now)
        selected = pipeline(runners)
        idle = sum(1 for runner in runners if runner.is_idle)
        IDLE_RUNNERS.labels(pool=pool.name).set(idle)

        outcome = AlignmentOutcome(
            pool_id=pool.id,
            runners=len(runners),
            idle=idle,
            selected=selected,
            dry_run=dry_run
        )

        if not selected:
            self.logger.debug("Pool is aligned", pool=pool.name, idle=idle, min_idle=policy.min_idle_runners)
            return outcome

        self.logger.info(
            "Scaling down idle runners",
            pool=pool.name,
            idle=idle,
            min_idle=policy.min_idle_runners,
            selected=selected,
            dry_run=dry_run
        )
        if not dry_run:
            outcome.report = await self.delete_runners(pool.name, selected)
            if outcome.report.failed:
                self.logger.warning(
                    "Pool partially aligned",
                    pool=pool.name,
                    deleted=outcome.report.deleted,
                    failed=list(outcome.report.failed)
                )
            else:
                self.logger.info("Successfully scaled pool down", pool=pool.name)
        return outcome

    async def align_all(self) -> List[AlignmentOutcome]:
        """Align every pool once, isolating failures per pool."""
        pools = await self.pool_source.list_pools()

        async def align(pool: PoolConfiguration) -> Optional[AlignmentOutcome]:
            async with self._semaphore:
                try:
                    return await self.align_pool(pool)
                except GarmError as e:
                    self.logger.error("Failed to align pool", pool=pool.name, error=str(e))
                    return None

        results = await asyncio.gather(*(align(pool) for pool in pools))
        self.last_sync = datetime.now(timezone.utc)
        return [outcome for outcome in results if outcome is not None]

    async def start(self) -> None:
        """
        Start the alignment loop and block until :meth:`stop` is called.

        Raises:
            RuntimeError: If the controller is already running
        """
        if self._running:
            raise RuntimeError("Controller is already running")

        self.logger.info("Starting GARM runner controller")

        if self.config.operator.enable_metrics:
            start_http_server(self.config.operator.metrics_port)
            self.logger.info("Metrics server started", port=self.config.operator.metrics_port)

        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._control_loop())
        try:
            await self._shutdown_event.wait()
        finally:
            self._running = False
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        """Stop the alignment loop and close the GARM session."""
        self.logger.info("Stopping GARM runner controller")
        self._shutdown_event.set()
        await self.session.close()

    async def _control_loop(self) -> None:
        interval = self.config.operator.sync_runners_interval
        self.logger.info("Starting alignment loop", interval=interval)

        while self._running:
            try:
                outcomes = await self.align_all()
                self.logger.debug(
                    "Alignment pass completed",
                    pools=len(outcomes),
                    deleted=sum(len(o.report.deleted) for o in outcomes)
                )
            except Exception as e:
                self.logger.error("Error in alignment loop", error=str(e))
            await asyncio.sleep(interval)
