"""
GARM runner models.

This module defines the read-only runner (instance) snapshot returned by the
GARM server, the two independent status axes a runner carries, and the
policy and result types used when aligning a pool's idle capacity.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProviderStatus(str, Enum):
    """
    Infrastructure-level lifecycle state of a runner instance.

    Reported by the GARM provider that created the instance, independent of
    whether the runner is currently executing a job.
    """

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    PENDING_CREATE = "pending_create"
    PENDING_DELETE = "pending_delete"
    PENDING_FORCE_DELETE = "pending_force_delete"
    DELETING = "deleting"
    DELETED = "deleted"
    CREATING = "creating"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "ProviderStatus":
        return cls.UNKNOWN


class RunnerStatus(str, Enum):
    """
    Job-execution state of a runner as seen by the forge (GitHub).
    """

    IDLE = "idle"
    ACTIVE = "active"
    PENDING = "pending"
    INSTALLING = "installing"
    FAILED = "failed"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "RunnerStatus":
        return cls.UNKNOWN


# Provider states in which a delete request is well defined.
DELETABLE_PROVIDER_STATUSES = frozenset({ProviderStatus.RUNNING, ProviderStatus.ERROR})


class Runner(BaseModel):
    """
    Snapshot of a single GARM runner instance.

    Runners are created and destroyed by the GARM server; this package only
    reads them and requests their deletion.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(default="", description="GARM instance ID")
    name: str = Field(..., description="Instance name, used to address the instance")
    pool_id: str = Field(default="", description="ID of the pool owning the runner")
    status: ProviderStatus = Field(
        default=ProviderStatus.UNKNOWN,
        description="Provider status"
    )
    runner_status: RunnerStatus = Field(
        default=RunnerStatus.UNKNOWN,
        description="Runner (job execution) status"
    )
    updated_at: datetime = Field(
        ...,
        description="Last state transition reported by GARM"
    )

    @field_validator("status", mode="before")
    @classmethod
    def coerce_provider_status(cls, v: object) -> ProviderStatus:
        return ProviderStatus(v) if v is not None else ProviderStatus.UNKNOWN

    @field_validator("runner_status", mode="before")
    @classmethod
    def coerce_runner_status(cls, v: object) -> RunnerStatus:
        return RunnerStatus(v) if v is not None else RunnerStatus.UNKNOWN

    @field_validator("updated_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_idle(self) -> bool:
        return self.runner_status == RunnerStatus.IDLE

    @property
    def is_deletable(self) -> bool:
        return self.status in DELETABLE_PROVIDER_STATUSES

    def idle_for(self, now: datetime) -> timedelta:
        """Time elapsed since the last reported state transition."""
        return now - self.updated_at


class PoolPolicy(BaseModel):
    """
    Target idle shape of a pool.

    Supplied by the caller for one alignment computation.
    """

    model_config = ConfigDict(frozen=True)

    min_idle_runners: int = Field(
        default=0,
        ge=0,
        description="Idle runners to keep"
    )
    min_idle_runner_age: timedelta = Field(
        default=timedelta(0),
        description="Minimum time a runner must have been idle to be removed"
    )

    @field_validator("min_idle_runner_age")
    @classmethod
    def validate_age(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("min_idle_runner_age must not be negative")
        return v


class DeletionReport(BaseModel):
    """Per-runner outcome of a deletion pass."""

    deleted: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class AlignmentOutcome(BaseModel):
    """Result of aligning one pool."""

    pool_id: str
    runners: int = Field(default=0, description="Runners in the snapshot")
    idle: int = Field(default=0, description="Idle runners in the snapshot")
    selected: List[str] = Field(default_factory=list)
    report: DeletionReport = Field(default_factory=DeletionReport)
    dry_run: bool = False
