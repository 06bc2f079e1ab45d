from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from movieauth.api.routes import _auth_payload, _client_info
from movieauth.api.schemas import (
    Envelope,
    ExternalUserRequest,
    TokenValidationResponse,
    UserResponse,
    ValidateTokenRequest,
)
from movieauth.logging import get_logger
from movieauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def require_service_token(
    x_service_token: Optional[str] = Header(None, alias="X-Service-Token"),
    runtime: Runtime = Depends(get_runtime),
) -> None:
    expected = runtime.settings.internal_service_token
    if not expected:
        raise _http_error("forbidden", "internal API is disabled", status_code=403)
    if not x_service_token or not hmac.compare_digest(
        x_service_token.encode(), expected.encode()
    ):
        logger.warning("internal_api_token_rejected", token_present=bool(x_service_token))
        raise _http_error("forbidden", "invalid service token", status_code=403)


router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_service_token)],
)


@router.post("/validate-token", response_model=Envelope)
async def validate_token(body: ValidateTokenRequest, runtime: Runtime = Depends(get_runtime)):
    """Validate an access token on behalf of another service.

    Always answers 200; ``valid`` and ``error`` carry the outcome.
    """
    result = await runtime.auth.validate_token_for_service(body.token)
    return Envelope(
        status="ok",
        data=TokenValidationResponse(
            valid=result.valid,
            user=UserResponse.from_user(result.user) if result.user else None,
            error=result.error,
        ),
    )


@router.get("/users/{user_id}", response_model=Envelope)
async def get_user(user_id: str, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/external", response_model=Envelope)
async def external_login(
    body: ExternalUserRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Federated-login callback: the first login for an external id creates the account."""
    result = await runtime.auth.login_external(
        body.external_id,
        body.provider,
        body.username,
        body.email,
        _client_info(request),
    )
    return Envelope(status="ok", data=_auth_payload(result))
