from fastapi import HTTPException

from ..services.errors import NotConfigured, NotFound, ReceptionistError, SlotUnavailable, UpstreamError, ValidationError

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotConfigured, 400),
    (NotFound, 404),
    (SlotUnavailable, 409),
    (UpstreamError, 502),
)


def to_http_exception(exc: ReceptionistError) -> HTTPException:
    status_code = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    detail = {"error": exc.kind, "message": exc.message}
    if exc.details:
        detail["details"] = exc.details
    return HTTPException(status_code=status_code, detail=detail)
