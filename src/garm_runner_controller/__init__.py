"""
GARM Runner Controller.

Keeps the idle capacity of GARM runner pools aligned with their declared
minimum, through one authenticated session shared by all pool workers.

This package implements:
- A GARM session that re-authenticates and retries once on token expiry
- The idle runner alignment pipeline deciding which runners to remove
- A periodic controller and CLI around both
"""

__version__ = "0.1.0"

from .controllers.alignment import AlignmentPipeline, compute_deletion_set
from .controllers.pool_controller import GarmRunnerController
from .models.runner import PoolPolicy, ProviderStatus, Runner, RunnerStatus
from .utils.session import GarmSession

__all__ = [
    "AlignmentPipeline",
    "GarmRunnerController",
    "GarmSession",
    "PoolPolicy",
    "ProviderStatus",
    "Runner",
    "RunnerStatus",
    "compute_deletion_set",
]
