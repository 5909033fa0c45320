"""
Pydantic schemas for request/response validation and client-side records.

This module contains:
- Request models for the backend's /api endpoints
- Response models for API responses
- Records shared by the chat and phone auth clients (Message, Session, ...)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class VerifyTokenRequest(BaseModel):
    """
    Body of POST /api/verify-token.

    The field is optional at the schema level so that an absent token is
    reported as missing-token (400) rather than a validation error.
    """
    id_token: Optional[str] = Field(
        None,
        alias="idToken",
        description="ID token issued to the client by the identity provider"
    )

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [{"idToken": "eyJhbGciOiJSUzI1NiIs..."}]
        }
    }


class PhoneNumberRequest(BaseModel):
    """Body of POST /api/create-custom-token and POST /api/get-user-by-phone."""
    phone_number: Optional[str] = Field(
        None,
        alias="phoneNumber",
        description="Phone number with country code, e.g. +14155550100"
    )

    model_config = {"populate_by_name": True}


class RevokeTokensRequest(BaseModel):
    """Body of POST /api/revoke-tokens."""
    uid: Optional[str] = Field(None, description="User ID")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for every error response."""
    success: bool = Field(default=False)
    error: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")
    details: Optional[str] = Field(None, description="Provider error message")


class VerifiedUser(BaseModel):
    uid: str
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    claims: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class VerifyTokenResponse(BaseModel):
    success: bool = True
    user: VerifiedUser


class CustomTokenResponse(BaseModel):
    success: bool = True
    custom_token: str = Field(..., alias="customToken")
    uid: str

    model_config = {"populate_by_name": True}


class UserMetadata(BaseModel):
    creation_time: Optional[str] = Field(None, alias="creationTime")
    last_sign_in_time: Optional[str] = Field(None, alias="lastSignInTime")

    model_config = {"populate_by_name": True}


class UserInfo(BaseModel):
    """Account details returned by POST /api/get-user-by-phone."""
    uid: str
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    disabled: bool = False
    metadata: UserMetadata = Field(default_factory=UserMetadata)

    model_config = {"populate_by_name": True}


class UserLookupResponse(BaseModel):
    success: bool = True
    user: UserInfo


class RevokeTokensResponse(BaseModel):
    success: bool = True
    message: str = "Tokens revoked successfully"
    tokens_valid_after_time: float = Field(
        ...,
        alias="tokensValidAfterTime",
        description="Revocation watermark, seconds since the epoch"
    )

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    """Response model for GET /api/health."""
    status: str = Field(..., description="Health status")
    timestamp: str = Field(..., description="Server time (ISO-8601 UTC)")
    service: str = Field(..., description="Service name")


# =============================================================================
# Client Records
# =============================================================================

class Message(BaseModel):
    """
    One chat line as read from a message collection.

    created_at is None while the server timestamp is still pending.
    """
    id: str
    text: str
    conversation_id: str = Field(..., alias="conversationId")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    model_config = {"populate_by_name": True, "frozen": True}


class VerificationChallenge(BaseModel):
    """One outstanding phone-verification attempt."""
    handle: str = Field(..., description="Opaque provider session info")
    phone_number: str


class Session(BaseModel):
    """An authenticated identity and its short-lived bearer token."""
    uid: str
    phone_number: Optional[str] = None
    id_token: str
    refresh_token: str
    expires_at: datetime

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at - timedelta(seconds=seconds) <= now
