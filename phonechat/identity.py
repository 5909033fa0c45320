"""
Administrative identity access for the backend.

Wraps the Firebase Admin SDK behind a small provider interface so routes
deal in UserAccount records and two domain exceptions instead of SDK types.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

import firebase_admin
from firebase_admin import auth, credentials

from phonechat.config import settings

logger = logging.getLogger(__name__)


class InvalidTokenError(Exception):
    """The presented ID token failed verification."""


class UserNotFoundError(Exception):
    """No account matches the lookup key."""


@dataclass
class UserAccount:
    """
    Provider account, trimmed to what the backend reports.

    Timestamps are epoch milliseconds as the Admin SDK reports them.
    """
    uid: str
    phone_number: Optional[str] = None
    disabled: bool = False
    creation_timestamp: Optional[int] = None
    last_sign_in_timestamp: Optional[int] = None
    tokens_valid_after_timestamp: Optional[int] = None


class IdentityProvider:
    """Operations the backend needs from the identity platform."""

    def verify_id_token(self, id_token: str) -> dict[str, Any]:
        raise NotImplementedError

    def get_user(self, uid: str) -> UserAccount:
        raise NotImplementedError

    def get_user_by_phone_number(self, phone_number: str) -> UserAccount:
        raise NotImplementedError

    def create_user(self, phone_number: str) -> UserAccount:
        raise NotImplementedError

    def create_custom_token(self, uid: str) -> str:
        raise NotImplementedError

    def revoke_refresh_tokens(self, uid: str) -> None:
        raise NotImplementedError


def _to_account(record: auth.UserRecord) -> UserAccount:
    metadata = record.user_metadata
    return UserAccount(
        uid=record.uid,
        phone_number=record.phone_number,
        disabled=record.disabled,
        creation_timestamp=metadata.creation_timestamp if metadata else None,
        last_sign_in_timestamp=metadata.last_sign_in_timestamp if metadata else None,
        tokens_valid_after_timestamp=record.tokens_valid_after_timestamp,
    )


class FirebaseIdentityProvider(IdentityProvider):
    """IdentityProvider backed by firebase_admin.auth."""

    def __init__(self, app: firebase_admin.App):
        self.app = app

    def verify_id_token(self, id_token: str) -> dict[str, Any]:
        try:
            return auth.verify_id_token(id_token, app=self.app, check_revoked=True)
        except (ValueError, auth.InvalidIdTokenError, auth.UserDisabledError) as e:
            # Expired and revoked tokens are InvalidIdTokenError subclasses;
            # malformed strings raise ValueError
            raise InvalidTokenError(str(e)) from e

    def get_user(self, uid: str) -> UserAccount:
        try:
            return _to_account(auth.get_user(uid, app=self.app))
        except (ValueError, auth.UserNotFoundError) as e:
            raise UserNotFoundError(str(e)) from e

    def get_user_by_phone_number(self, phone_number: str) -> UserAccount:
        try:
            return _to_account(auth.get_user_by_phone_number(phone_number, app=self.app))
        except (ValueError, auth.UserNotFoundError) as e:
            raise UserNotFoundError(str(e)) from e

    def create_user(self, phone_number: str) -> UserAccount:
        return _to_account(auth.create_user(phone_number=phone_number, app=self.app))

    def create_custom_token(self, uid: str) -> str:
        token = auth.create_custom_token(uid, app=self.app)
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def revoke_refresh_tokens(self, uid: str) -> None:
        try:
            auth.revoke_refresh_tokens(uid, app=self.app)
        except (ValueError, auth.UserNotFoundError) as e:
            raise UserNotFoundError(str(e)) from e


@lru_cache()
def get_firebase_app() -> firebase_admin.App:
    """
    Initialize the Firebase Admin app once from the service account file.

    The handle is read-only after initialization and shared by every request.
    """
    logger.info(f"Initializing Firebase Admin SDK from {settings.SERVICE_ACCOUNT_PATH}")
    options = {}
    if settings.FIREBASE_DATABASE_URL:
        options["databaseURL"] = settings.FIREBASE_DATABASE_URL
    if settings.FIREBASE_PROJECT_ID:
        options["projectId"] = settings.FIREBASE_PROJECT_ID
    cred = credentials.Certificate(settings.SERVICE_ACCOUNT_PATH)
    return firebase_admin.initialize_app(cred, options)


@lru_cache()
def get_identity_provider() -> IdentityProvider:
    """FastAPI dependency returning the process-wide identity provider."""
    return FirebaseIdentityProvider(get_firebase_app())
