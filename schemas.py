"""
Response envelope schema.

Every backend response is validated here into a discriminated result
(Success | Failure) so call sites never probe raw payload fields.
"""
from typing import Any, Dict, Literal, Optional, Union

import httpx
import pydantic
from pydantic import BaseModel, ConfigDict, Field

from errors import AuthError, CourtAPIError, ParseError, RequestError


class ApiErrorBody(BaseModel):
    code: str = "REQUEST_ERROR"
    message: str = "Request failed"


class ApiEnvelope(BaseModel):
    """{ success, data?, error?, token?, refreshToken?, pagination? }"""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    success: bool
    data: Any = None
    error: Optional[ApiErrorBody] = None
    token: Optional[str] = None
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    pagination: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class Success(BaseModel):
    kind: Literal["success"] = "success"
    status: int
    envelope: ApiEnvelope

    @property
    def data(self) -> Any:
        return self.envelope.data


class Failure(BaseModel):
    kind: Literal["failure"] = "failure"
    status: int
    error: ApiErrorBody


Result = Union[Success, Failure]


def parse_response(response: httpx.Response) -> Result:
    """
    Validate an HTTP response into a Success or Failure.

    Raises:
        ParseError: body is not JSON or does not match the envelope
    """
    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type:
        text = response.text
        raise ParseError(
            text or "Invalid response from server",
            code="INVALID_RESPONSE",
            status=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError
        raise ParseError(
            "Invalid response from server",
            code="PARSE_ERROR",
            status=response.status_code,
        ) from e

    try:
        envelope = ApiEnvelope.model_validate(payload)
    except pydantic.ValidationError as e:
        if not response.is_success and isinstance(payload, dict):
            # Error bodies without the envelope (e.g. proxy errors)
            return Failure(status=response.status_code, error=ApiErrorBody())
        raise ParseError(
            f"Unexpected response shape: {e.error_count()} validation error(s)",
            code="PARSE_ERROR",
            status=response.status_code,
        ) from e

    if not response.is_success or not envelope.success:
        return Failure(
            status=response.status_code,
            error=envelope.error or ApiErrorBody(),
        )
    return Success(status=response.status_code, envelope=envelope)


def error_from_failure(failure: Failure, response: dict = None) -> CourtAPIError:
    """Map a Failure to the typed exception callers see."""
    if failure.status in (401, 403):
        return AuthError(
            failure.error.message,
            code=failure.error.code,
            status=failure.status,
            response=response,
        )
    return RequestError(
        failure.error.message,
        code=failure.error.code,
        status=failure.status,
        response=response,
    )
