"""
Controller package.

Idle runner alignment and the pool controller that applies it.
"""

from .alignment import (
    AlignmentPipeline,
    align_idle_runners,
    compute_deletion_set,
    deletable_runners,
    idle_runners,
    old_idle_runners,
)
from .pool_controller import GarmRunnerController, StaticPoolSource

__all__ = [
    "AlignmentPipeline",
    "GarmRunnerController",
    "StaticPoolSource",
    "align_idle_runners",
    "compute_deletion_set",
    "deletable_runners",
    "idle_runners",
    "old_idle_runners",
]
