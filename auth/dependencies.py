"""
auth/dependencies.py -- FastAPI Depends() helpers around the resolver.

The resolver is read from request.app.state.resolver, which the application
sets at startup (usually build_auth_core(settings).resolver).

Request attributes used for device tracking:
  User-Agent           -> RequestMetadata.user_agent
  request.client.host  -> RequestMetadata.ip_address
  X-Device-Id          -> RequestMetadata.device_hint (stable app install id)
  X-Device-Location    -> RequestMetadata.location

Two ways to present a bearer token:
  Authorization: Bearer <token>   -- routed by the token's issuer.
  X-Auth-Provider: AUTH0          -- optional explicit provider hint.

Failure mapping (detail is always {"code": ..., "message": ...} with a fixed
public message, never the underlying error):
  MALFORMED_INPUT      -> 400
  INVALID_CREDENTIALS  -> 401 with WWW-Authenticate: Bearer
  UNLINKED_IDENTITY    -> 403
  PROVIDER_UNAVAILABLE -> 503 with Retry-After
  STORAGE_FAILURE      -> 503 with Retry-After

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AuthOutcome, BearerToken, Identity, RequestMetadata
from core.errors import AuthGateError, ErrorKind, RejectionReason

RETRY_AFTER_SECONDS = 5

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_INPUT: 400,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.UNLINKED_IDENTITY: 403,
    ErrorKind.PROVIDER_UNAVAILABLE: 503,
    ErrorKind.STORAGE_FAILURE: 503,
}


def request_metadata(request: Request) -> RequestMetadata:
    """Collect the request attributes the resolver records on the device."""
    return RequestMetadata(
        user_agent=request.headers.get("User-Agent", ""),
        ip_address=request.client.host if request.client else None,
        device_hint=request.headers.get("X-Device-Id") or None,
        location=request.headers.get("X-Device-Location") or None,
    )


def bearer_token(request: Request) -> BearerToken | None:
    """Return the Authorization: Bearer token, or None if there is none."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    hint = request.headers.get("X-Auth-Provider") or None
    return BearerToken(token=token.strip(), provider=hint)


def error_response(kind: ErrorKind) -> HTTPException:
    """Build the HTTPException for an error kind with its fixed public message."""
    headers: dict[str, str] = {}
    if kind is ErrorKind.INVALID_CREDENTIALS:
        headers["WWW-Authenticate"] = "Bearer"
    if kind.retryable:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    return HTTPException(
        status_code=_STATUS_BY_KIND[kind],
        detail={"code": kind.value, "message": kind.public_message},
        headers=headers or None,
    )


async def authenticate_request(request: Request) -> AuthOutcome:
    """Run the resolver on the request's bearer token.

    A missing token is reported as a rejected INVALID_CREDENTIALS outcome
    without calling the resolver. Infrastructure failures become HTTP 503.
    """
    token = bearer_token(request)
    if token is None:
        return AuthOutcome.rejected(RejectionReason.INVALID_CREDENTIALS)
    resolver = request.app.state.resolver
    try:
        return await resolver.authenticate(token, request_metadata(request))
    except AuthGateError as exc:
        if exc.kind is None:
            raise
        raise error_response(exc.kind) from exc


async def require_identity(request: Request) -> Identity:
    """Require an authenticated caller. Raises HTTPException otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(require_identity)): ...

    The resolved device is stored on request.state.device for handlers that
    show or revoke the current session.
    """
    outcome = await authenticate_request(request)
    if not outcome.ok:
        raise error_response(outcome.reason.kind)
    request.state.device = outcome.device
    return outcome.identity
