"""
Data models for the GARM runner controller.
"""

from .config import (
    ControllerConfiguration,
    GarmConfiguration,
    OperatorConfiguration,
    PoolConfiguration,
    PoolSource,
)
from .runner import (
    AlignmentOutcome,
    DeletionReport,
    PoolPolicy,
    ProviderStatus,
    Runner,
    RunnerStatus,
)

__all__ = [
    "AlignmentOutcome",
    "ControllerConfiguration",
    "DeletionReport",
    "GarmConfiguration",
    "OperatorConfiguration",
    "PoolConfiguration",
    "PoolPolicy",
    "PoolSource",
    "ProviderStatus",
    "Runner",
    "RunnerStatus",
]
