from typing import Any, Callable, Optional
from fastapi import HTTPException, status
from settlement.core.errors import ErrorCode, ServiceResult

STATUS_BY_CODE = {
    ErrorCode.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.RETRY_EXHAUSTED: 422,
    ErrorCode.TRANSIENT_EXTERNAL: status.HTTP_502_BAD_GATEWAY,
}


def unwrap(result: ServiceResult, conflict_serializer: Optional[Callable[[Any], Any]] = None):
    """Return the result's value or raise the HTTPException matching its reason code."""
    if result.succeeded:
        return result.value

    detail = {"code": result.code, "message": result.message, "errors": result.errors}
    if result.conflicts and conflict_serializer:
        detail["conflicts"] = [conflict_serializer(c) for c in result.conflicts]
    raise HTTPException(
        status_code=STATUS_BY_CODE.get(result.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=detail,
    )
