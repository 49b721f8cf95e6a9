"""
apiguard - resilient request layer between application code and a remote HTTP API.
"""

from apiguard.services import (
    RequestOptions,
    RequestResult,
    ServiceClient,
    ServiceError,
    SupersededError,
)

__all__ = [
    "RequestOptions",
    "RequestResult",
    "ServiceClient",
    "ServiceError",
    "SupersededError",
]
