from typing import Any, Dict, Optional


class ReceptionistError(Exception):
    """Base error carrying a stable machine-readable kind."""

    kind = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(ReceptionistError):
    kind = "not_found"


class NotConfigured(ReceptionistError):
    kind = "not_configured"


class UpstreamError(ReceptionistError):
    kind = "upstream_error"

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class SlotUnavailable(ReceptionistError):
    kind = "slot_unavailable"


class ValidationError(ReceptionistError):
    kind = "validation_error"


class DuplicateRecord(ReceptionistError):
    """A uniqueness constraint rejected a write."""

    kind = "duplicate_record"
