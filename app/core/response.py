# app/core/response.py
from typing import Any, Optional, Literal, Dict
from pydantic import BaseModel
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from app.core.config import settings


class ErrorDetail(BaseModel):
    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ResponseModel(BaseModel):
    status: Literal["success", "error"]
    msg: str
    data: Optional[Any] = None


class ErrorResponseModel(BaseModel):
    status: Literal["error"] = "error"
    msg: str
    error_code: Optional[str] = None
    # Failure category of a migration error (network, payment, ...)
    category: Optional[str] = None
    details: Optional[list[ErrorDetail]] = None
    data: Optional[Any] = None
    environment: Optional[str] = None


def success_response(
    msg: str = "OK", data: Any = None, status_code: int = 200
) -> JSONResponse:
    """Wrap service output (UUIDs, datetimes, enums) in the standard envelope."""
    payload = ResponseModel(status="success", msg=msg, data=jsonable_encoder(data)).model_dump(
        exclude_none=True
    )
    return JSONResponse(status_code=status_code, content=payload)


def error_response(
    msg: str,
    data: Any = None,
    status_code: int = 400,
    error_code: Optional[str] = None,
    category: Optional[str] = None,
    details: Optional[list[ErrorDetail]] = None,
) -> JSONResponse:
    """Error envelope. Plain ``{status, msg}`` unless a code or details are given."""
    if not details and not error_code:
        payload = ResponseModel(status="error", msg=msg, data=jsonable_encoder(data)).model_dump(
            exclude_none=True
        )
    else:
        payload = ErrorResponseModel(
            msg=msg,
            error_code=error_code,
            category=category,
            details=details,
            data=jsonable_encoder(data),
            environment=settings.ENVIRONMENT if settings.DEBUG else None,
        ).model_dump(exclude_none=True)

    return JSONResponse(status_code=status_code, content=payload)


def validation_error_response(
    errors: list[Dict[str, Any]],
    status_code: int = 422
) -> JSONResponse:
    """Create a standardized validation error response"""
    details = []
    for err in errors:
        loc = err.get("loc", [])
        field = ".".join(str(x) for x in loc if x != "body")
        details.append(ErrorDetail(
            field=field or None,
            message=err.get("msg", "Validation error"),
            code="VALIDATION_ERROR"
        ))

    return error_response(
        msg="Invalid request parameters",
        details=details,
        status_code=status_code,
        error_code="VALIDATION_ERROR"
    )
