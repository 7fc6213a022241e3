"""
Controller configuration models.

Connection details for the GARM server, operator tuning knobs and the
statically declared pools, validated with pydantic before the controller
starts.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

from .runner import PoolPolicy


class PoolSource(str, Enum):
    """Where the controller discovers pools and their policy."""

    STATIC = "static"           # Pools declared in the configuration file
    KUBERNETES = "kubernetes"   # Pool custom resources in the cluster


class GarmConfiguration(BaseModel):
    """
    GARM server connection and credentials.
    """

    model_config = ConfigDict(extra="forbid")

    server: str = Field(
        ...,
        description="GARM server URL"
    )
    username: str = Field(
        ...,
        min_length=1,
        description="GARM admin username"
    )
    password: SecretStr = Field(
        ...,
        description="GARM admin password"
    )
    init: bool = Field(
        default=True,
        description="Run the GARM first-run bootstrap before logging in"
    )
    email: Optional[str] = Field(
        default=None,
        description="Admin email used by the first-run bootstrap"
    )
    tls_verify: bool = Field(
        default=True,
        description="Verify TLS certificates"
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout in seconds"
    )

    @field_validator("server")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate GARM URL format."""
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("GARM server URL must include protocol (https:// or http://)")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_email_for_init(self) -> "GarmConfiguration":
        if self.init and not self.email:
            raise ValueError("email is required when init is enabled")
        return self


class PoolConfiguration(BaseModel):
    """
    A pool aligned by the controller.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(
        ...,
        max_length=253,
        pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$",
        description="Pool name (DNS-1123 subdomain, as Kubernetes object names)"
    )
    id: str = Field(
        ...,
        min_length=1,
        description="GARM pool ID"
    )
    min_idle_runners: int = Field(
        default=0,
        ge=0,
        description="Idle runners to keep in the pool"
    )
    min_idle_runners_age: Optional[int] = Field(
        default=None,
        ge=0,
        description="Override of the operator-wide minimum idle age (seconds)"
    )

    def policy(self, default_age: timedelta) -> PoolPolicy:
        age = default_age
        if self.min_idle_runners_age is not None:
            age = timedelta(seconds=self.min_idle_runners_age)
        return PoolPolicy(min_idle_runners=self.min_idle_runners, min_idle_runner_age=age)


class OperatorConfiguration(BaseModel):
    """
    Controller tuning knobs.
    """

    model_config = ConfigDict(extra="forbid")

    sync_runners_interval: int = Field(
        default=30,
        ge=5,
        le=300,
        description="Seconds between alignment passes"
    )
    min_idle_runners_age: int = Field(
        default=0,
        ge=0,
        description="Minimum idle age (seconds) before a runner may be removed"
    )
    pool_concurrency: int = Field(
        default=4,
        ge=1,
        description="Pools aligned concurrently"
    )
    call_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Deadline in seconds for one GARM call, re-login included"
    )
    pool_source: PoolSource = Field(
        default=PoolSource.STATIC,
        description="Where pools are discovered"
    )
    watch_namespace: str = Field(
        default="",
        description="Namespace of Pool resources (empty for all namespaces)"
    )
    metrics_port: int = Field(
        default=8080,
        gt=0,
        lt=65536,
        description="Port for the Prometheus metrics endpoint"
    )
    enable_metrics: bool = Field(
        default=True,
        description="Expose Prometheus metrics"
    )
    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )

    @property
    def min_idle_age(self) -> timedelta:
        return timedelta(seconds=self.min_idle_runners_age)


class ControllerConfiguration(BaseModel):
    """
    Main controller configuration.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    garm: GarmConfiguration = Field(
        ...,
        description="GARM server configuration"
    )
    operator: OperatorConfiguration = Field(
        default_factory=OperatorConfiguration,
        description="Operator configuration"
    )
    pools: List[PoolConfiguration] = Field(
        default_factory=list,
        description="Statically declared pools"
    )

    @model_validator(mode="after")
    def validate_pools(self) -> "ControllerConfiguration":
        names = [pool.name for pool in self.pools]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate pool names: {', '.join(duplicates)}")

        if self.operator.pool_source == PoolSource.STATIC and not self.pools:
            raise ValueError("At least one pool is required when pool_source is 'static'")
        return self

    def pool(self, name: str) -> PoolConfiguration:
        for pool in self.pools:
            if pool.name == name or pool.id == name:
                return pool
        raise KeyError(name)

    def redacted(self) -> Dict[str, Any]:
        """Configuration as a dict safe for display."""
        data = self.model_dump(mode="json")
        data["garm"]["password"] = "**********"
        return data
