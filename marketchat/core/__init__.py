"""Core module for identity, exceptions and telemetry."""

from marketchat.core.exceptions import (
    BackendRejectedError,
    InvalidDecisionError,
    InvalidStateError,
    MissingIdentityError,
    NotFoundError,
    TransientBackendError,
    UnauthorizedError,
)
from marketchat.core.identity import Actor, Role, normalize_identifier
from marketchat.core.telemetry import get_tracer, setup_all_instrumentation, setup_telemetry

__all__ = [
    "Actor",
    "BackendRejectedError",
    "InvalidDecisionError",
    "InvalidStateError",
    "MissingIdentityError",
    "NotFoundError",
    "Role",
    "TransientBackendError",
    "UnauthorizedError",
    "get_tracer",
    "normalize_identifier",
    "setup_all_instrumentation",
    "setup_telemetry",
]
