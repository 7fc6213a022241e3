"""
Shared test fixtures.

Provides runner factories and an in-memory stand-in for the GARM API
client so session and controller behaviour can be exercised without a
server.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from prometheus_client import REGISTRY

from garm_runner_controller.models.config import ControllerConfiguration
from garm_runner_controller.models.runner import ProviderStatus, Runner, RunnerStatus
from garm_runner_controller.utils.garm_client import GarmUnauthorizedError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_runner(name: str,
                runner_status: RunnerStatus = RunnerStatus.IDLE,
                status: ProviderStatus = ProviderStatus.RUNNING,
                idle_minutes: float = 30,
                pool_id: str = "pool-1") -> Runner:
    return Runner(
        id=f"id-{name}",
        name=name,
        pool_id=pool_id,
        status=status,
        runner_status=runner_status,
        updated_at=NOW - timedelta(minutes=idle_minutes),
    )


def metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class FakeGarmClient:
    """
    In-memory GARM API.

    Tokens are ``token-1``, ``token-2``... in login order. Tokens listed in
    ``rejected_tokens`` are answered with 401.
    """

    base_url = "https://garm.test"

    def __init__(self, login_delay: float = 0.0) -> None:
        self.login_delay = login_delay
        self.login_error: Optional[Exception] = None
        self.rejected_tokens: set = set()

        self.first_run_calls = 0
        self.login_calls = 0
        self.closed = False

        self.pools: Dict[str, List[Runner]] = {}
        self.list_errors: Dict[str, Exception] = {}
        self.delete_errors: Dict[str, Exception] = {}
        self.list_calls: List[str] = []
        self.deleted: List[str] = []

    async def first_run(self, username: str, password: str, email: str) -> None:
        self.first_run_calls += 1

    async def login(self, username: str, password: str) -> str:
        self.login_calls += 1
        if self.login_delay:
            await asyncio.sleep(self.login_delay)
        if self.login_error is not None:
            raise self.login_error
        return f"token-{self.login_calls}"

    def _check(self, token: str) -> None:
        if token in self.rejected_tokens:
            raise GarmUnauthorizedError()

    async def list_pool_instances(self, pool_id: str, token: str) -> List[Runner]:
        self._check(token)
        self.list_calls.append(pool_id)
        if pool_id in self.list_errors:
            raise self.list_errors[pool_id]
        return list(self.pools.get(pool_id, []))

    async def delete_instance(self, name: str, token: str) -> None:
        self._check(token)
        if name in self.delete_errors:
            raise self.delete_errors[name]
        self.deleted.append(name)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client():
    return FakeGarmClient()


@pytest.fixture
def controller_config():
    return ControllerConfiguration(
        garm={
            "server": "https://garm.test",
            "username": "admin",
            "password": "s3cret-password",
            "email": "admin@example.com",
        },
        operator={"enable_metrics": False, "min_idle_runners_age": 600},
        pools=[
            {"name": "small", "id": "pool-1", "min_idle_runners": 2},
            {"name": "large", "id": "pool-2", "min_idle_runners": 0},
        ],
    )
