import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, Header, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from phonechat.config import settings
from phonechat.errors import ApiError
from phonechat.identity import (
    IdentityProvider,
    InvalidTokenError,
    UserNotFoundError,
    get_identity_provider,
)
from phonechat.logging_utils import (
    setup_logging,
    RequestLoggingMiddleware,
    log_auth_outcome,
    mask_token,
)
from phonechat.metrics import get_metrics, get_metrics_content_type
from phonechat.utils import utc_now, format_timestamp, millis_to_iso
from phonechat.schemas import (
    ErrorResponse,
    HealthResponse,
    VerifyTokenRequest,
    VerifyTokenResponse,
    VerifiedUser,
    PhoneNumberRequest,
    CustomTokenResponse,
    UserLookupResponse,
    UserInfo,
    UserMetadata,
    RevokeTokensRequest,
    RevokeTokensResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    The backend holds no state of its own; the identity provider is
    created lazily on first use.
    """
    logger.info(f"Server running on port {settings.PORT}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    yield


app = FastAPI(
    title="Phone Auth API",
    description="Token verification and user management over Firebase Authentication",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handlers
# =============================================================================

def error_response(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        exc.status_code,
        ErrorResponse(error=exc.error, code=exc.code, details=exc.details),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Malformed request body: {exc.errors()}")
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        ErrorResponse(error="Invalid request body", code="invalid-request"),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"Unhandled error in request {request_id}: {exc}", exc_info=exc)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(error="Internal server error", code="internal"),
    )


def require_admin_key(
    x_admin_key: Annotated[Optional[str], Header(alias="X-Admin-Key")] = None,
) -> None:
    """
    Guard for the administrative endpoints.

    Open when ADMIN_API_KEY is empty, which is the default.
    """
    if settings.ADMIN_API_KEY and x_admin_key != settings.ADMIN_API_KEY:
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED,
            "Admin key required",
            code="unauthorized",
        )


# =============================================================================
# Token Verification Route
# =============================================================================

@app.post(
    "/api/verify-token",
    response_model=VerifyTokenResponse,
    responses={
        400: {"model": ErrorResponse, "description": "No token provided"},
        401: {"model": ErrorResponse, "description": "Invalid token"},
    }
)
async def verify_token(
    body: VerifyTokenRequest,
    request: Request,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> VerifyTokenResponse:
    """
    Verify an ID token and return the decoded identity.

    Body:
        - idToken: ID token obtained by the client after phone sign-in
    """
    if not body.id_token:
        log_auth_outcome(request, "verify_token", "missing_input")
        raise ApiError(status.HTTP_400_BAD_REQUEST, "No token provided", code="missing-token")

    logger.debug(f"Verifying token {mask_token(body.id_token)}")
    try:
        claims = provider.verify_id_token(body.id_token)
    except InvalidTokenError as e:
        logger.error(f"Token verification failed: {e}")
        log_auth_outcome(request, "verify_token", "invalid_token")
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED,
            "Invalid token",
            code="invalid-token",
            details=str(e),
        )

    uid = claims.get("uid") or claims.get("sub")
    logger.info(f"Token verified successfully for user {uid}")
    logger.debug(f"Phone: {claims.get('phone_number')}")
    log_auth_outcome(request, "verify_token", "verified", uid=uid)

    return VerifyTokenResponse(
        user=VerifiedUser(
            uid=uid,
            phone_number=claims.get("phone_number"),
            claims=claims,
        )
    )


# =============================================================================
# User Management Routes
# =============================================================================

def require_phone_number(request: Request, endpoint: str, body: PhoneNumberRequest) -> str:
    if not body.phone_number:
        log_auth_outcome(request, endpoint, "missing_input")
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Phone number required", code="missing-phone-number")
    return body.phone_number


@app.post(
    "/api/create-custom-token",
    response_model=CustomTokenResponse,
    dependencies=[Depends(require_admin_key)],
    responses={400: {"model": ErrorResponse, "description": "Phone number required"}},
)
async def create_custom_token(
    body: PhoneNumberRequest,
    request: Request,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> CustomTokenResponse:
    """
    Issue a custom sign-in token for a phone number.

    The account is created first when no user has that phone number.
    """
    phone_number = require_phone_number(request, "create_custom_token", body)

    result = "issued"
    try:
        account = provider.get_user_by_phone_number(phone_number)
    except UserNotFoundError:
        account = provider.create_user(phone_number)
        logger.info(f"New user created: {account.uid}")
        result = "created"

    custom_token = provider.create_custom_token(account.uid)
    log_auth_outcome(request, "create_custom_token", result, uid=account.uid)

    return CustomTokenResponse(custom_token=custom_token, uid=account.uid)


@app.post(
    "/api/get-user-by-phone",
    response_model=UserLookupResponse,
    dependencies=[Depends(require_admin_key)],
    responses={
        400: {"model": ErrorResponse, "description": "Phone number required"},
        404: {"model": ErrorResponse, "description": "User not found"},
    }
)
async def get_user_by_phone(
    body: PhoneNumberRequest,
    request: Request,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> UserLookupResponse:
    """Look up an account by phone number."""
    phone_number = require_phone_number(request, "get_user_by_phone", body)

    try:
        account = provider.get_user_by_phone_number(phone_number)
    except UserNotFoundError as e:
        logger.error(f"User retrieval failed: {e}")
        log_auth_outcome(request, "get_user_by_phone", "not_found")
        raise ApiError(status.HTTP_404_NOT_FOUND, "User not found", code="user-not-found")

    log_auth_outcome(request, "get_user_by_phone", "found", uid=account.uid)

    return UserLookupResponse(
        user=UserInfo(
            uid=account.uid,
            phone_number=account.phone_number,
            disabled=account.disabled,
            metadata=UserMetadata(
                creation_time=millis_to_iso(account.creation_timestamp),
                last_sign_in_time=millis_to_iso(account.last_sign_in_timestamp),
            ),
        )
    )


@app.post(
    "/api/revoke-tokens",
    response_model=RevokeTokensResponse,
    dependencies=[Depends(require_admin_key)],
    responses={
        400: {"model": ErrorResponse, "description": "User ID required"},
        404: {"model": ErrorResponse, "description": "User not found"},
    }
)
async def revoke_tokens(
    body: RevokeTokensRequest,
    request: Request,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> RevokeTokensResponse:
    """
    Revoke every refresh token of a user.

    Returns the revocation watermark: ID tokens issued before it are rejected
    by /api/verify-token.
    """
    if not body.uid:
        log_auth_outcome(request, "revoke_tokens", "missing_input")
        raise ApiError(status.HTTP_400_BAD_REQUEST, "User ID required", code="missing-uid")

    try:
        provider.revoke_refresh_tokens(body.uid)
        account = provider.get_user(body.uid)
    except UserNotFoundError as e:
        logger.error(f"Token revocation failed: {e}")
        log_auth_outcome(request, "revoke_tokens", "not_found", uid=body.uid)
        raise ApiError(status.HTTP_404_NOT_FOUND, "User not found", code="user-not-found")

    valid_after = (account.tokens_valid_after_timestamp or 0) / 1000
    logger.info(f"Tokens revoked for user {body.uid}, valid after {valid_after}")
    log_auth_outcome(request, "revoke_tokens", "revoked", uid=body.uid)

    return RevokeTokensResponse(tokens_valid_after_time=valid_after)


# =============================================================================
# Health & Metrics Routes
# =============================================================================

@app.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=format_timestamp(utc_now()),
        service="Phone Auth API",
    )


@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    - http_requests_total: Total HTTP requests by method, path, status
    - auth_requests_total: Auth endpoint outcomes by endpoint, result
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
