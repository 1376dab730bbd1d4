from typing import NoReturn

from fastapi import HTTPException, status

from src.core.approvals import (
    ApprovalConflictError,
    ApprovalDeniedError,
    ApprovalNotFoundError,
    ApprovalValidationError,
)

# Newer Starlette releases renamed the 422 constant.
HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def raise_approval_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, ApprovalNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ApprovalDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, ApprovalConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ApprovalValidationError):
        raise HTTPException(
            status_code=HTTP_422_UNPROCESSABLE,
            detail=str(exc),
        ) from exc
    raise exc
