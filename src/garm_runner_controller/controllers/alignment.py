"""
Idle runner alignment.

Decides which runners of a pool can be removed to bring its idle capacity
down to the pool's ``min_idle_runners``. Everything here is pure: the input
is a snapshot already fetched from GARM and the output is the list of
runner names to delete.

The stages run in a fixed order::

    idle -> old enough -> deletable at the provider -> first ``excess``

Selection keeps snapshot order. Runners are not sorted by age before the
cut, so with more old idle runners than ``excess`` the first listed ones
are removed, not necessarily the oldest.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import structlog

from ..models.runner import PoolPolicy, Runner

logger = structlog.get_logger(component="alignment")


def _utc_now(now: Optional[datetime]) -> datetime:
    """Reference time as an aware UTC datetime; naive values are taken as UTC."""
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def idle_runners(runners: Sequence[Runner]) -> List[Runner]:
    """Runners the forge reports as idle."""
    idle = []
    for runner in runners:
        if runner.is_idle:
            idle.append(runner)
        else:
            logger.debug("Runner is not idle", runner=runner.name, state=runner.runner_status.value)
    return idle


def old_idle_runners(runners: Sequence[Runner],
                     min_idle_runner_age: timedelta,
                     now: Optional[datetime] = None) -> List[Runner]:
    """Runners whose last state change is older than ``min_idle_runner_age``."""
    now = _utc_now(now)
    return [r for r in runners if r.idle_for(now) > min_idle_runner_age]


def deletable_runners(runners: Sequence[Runner]) -> List[Runner]:
    """Runners in a provider state where deletion is allowed (running or error)."""
    deletable = []
    for runner in runners:
        if runner.is_deletable:
            deletable.append(runner)
        else:
            logger.debug(
                "Runner is in state that does not allow deletion",
                runner=runner.name,
                state=runner.status.value
            )
    return deletable


def align_idle_runners(min_idle_runners: int, candidates: Sequence[Runner]) -> List[Runner]:
    """
    Select the runners exceeding ``min_idle_runners``.

    Returns the first ``max(0, len(candidates) - min_idle_runners)``
    candidates in input order.
    """
    excess = max(0, len(candidates) - min_idle_runners)
    return list(candidates[:excess])


class AlignmentPipeline:
    """
    The idle alignment stages composed for one policy.

    Args:
        policy: Target idle shape of the pool
        now: Reference time for age computations, defaults to the current time
    """

    def __init__(self, policy: PoolPolicy, now: Optional[datetime] = None) -> None:
        self.policy = policy
        self.now = _utc_now(now)

    def candidates(self, snapshot: Sequence[Runner]) -> List[Runner]:
        """Idle runners that are old enough and safe to delete."""
        idle = idle_runners(snapshot)
        old = old_idle_runners(idle, self.policy.min_idle_runner_age, self.now)
        return deletable_runners(old)

    def select(self, snapshot: Sequence[Runner]) -> List[Runner]:
        return align_idle_runners(self.policy.min_idle_runners, self.candidates(snapshot))

    def __call__(self, snapshot: Sequence[Runner]) -> List[str]:
        return [runner.name for runner in self.select(snapshot)]


def compute_deletion_set(snapshot: Sequence[Runner],
                         policy: PoolPolicy,
                         now: Optional[datetime] = None) -> List[str]:
    """Names of the runners to delete so the pool keeps ``policy.min_idle_runners`` idle."""
    return AlignmentPipeline(policy, now)(snapshot)
