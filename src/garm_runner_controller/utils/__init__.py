"""
Utility modules for the GARM runner controller.

GARM API client, the shared authenticated session and metrics.
"""

from .garm_client import (
    GarmAuthenticationError,
    GarmCancelledError,
    GarmClient,
    GarmError,
    GarmUpstreamError,
)
from .session import GarmSession

__all__ = [
    "GarmAuthenticationError",
    "GarmCancelledError",
    "GarmClient",
    "GarmError",
    "GarmSession",
    "GarmUpstreamError",
]
