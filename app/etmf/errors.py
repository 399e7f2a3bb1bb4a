"""
Error taxonomy for eTMF operations.

Services raise these; the app-level error handler in `app.etmf.create_app`
renders them as JSON with a machine-readable `error` code, so callers can
tell e.g. an illegal status transition from a uniqueness violation even
when both map to HTTP 409.
"""
from __future__ import annotations

from typing import Any


class EtmfError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(EtmfError):
    """Referenced entity (or the parent named in the path) does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None) -> None:
        msg = f"{resource} not found"
        if resource_id is not None:
            msg = f"{resource} {resource_id!s} not found"
        super().__init__(msg, details={"resource": resource, "id": resource_id} if resource_id is not None else None)
        self.resource = resource
        self.resource_id = resource_id


class Conflict(EtmfError):
    """Uniqueness violation."""

    code = "conflict"
    status_code = 409


class ValidationError(EtmfError):
    """Field constraint violation (oversized file, bad date range, missing field)."""

    code = "validation_error"
    status_code = 400


class InvalidState(EtmfError):
    """Operation not legal from the entity's current status."""

    code = "invalid_state"
    status_code = 409


class OutOfOrder(EtmfError):
    """Workflow step acted on while an earlier step is still open."""

    code = "out_of_order"
    status_code = 409


class StorageUnavailable(EtmfError):
    code = "storage_unavailable"
    status_code = 503


class Timeout(EtmfError):
    code = "timeout"
    status_code = 504
