"""
Pytest configuration and shared fixtures.

Settings are read from the environment at import time, so test values are
set here before any phonechat module that reads settings is imported.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from phonechat.config import get_settings
get_settings.cache_clear()

from phonechat.auth_client import AuthClient
from phonechat.errors import AuthErrorCode, AuthProviderError
from phonechat.identity import (
    IdentityProvider,
    InvalidTokenError,
    UserAccount,
    UserNotFoundError,
    get_identity_provider,
)
from phonechat.main import app
from phonechat.phone_auth import HumanVerificationWidget
from phonechat.schemas import Session, VerificationChallenge
from phonechat.storage import Base, engine
from phonechat.streams import SqlMessageCollection


# =============================================================================
# Backend fakes
# =============================================================================

class FakeIdentityProvider(IdentityProvider):
    """In-memory stand-in for the Firebase Admin SDK."""

    def __init__(self):
        self.users: dict[str, UserAccount] = {}
        self.tokens: dict[str, str] = {}

    def add_user(self, uid: str, phone_number: str, **kwargs) -> UserAccount:
        account = UserAccount(uid=uid, phone_number=phone_number, **kwargs)
        self.users[uid] = account
        return account

    def issue_token(self, uid: str, token: Optional[str] = None) -> str:
        token = token or f"id-token-for-{uid}"
        self.tokens[token] = uid
        return token

    def verify_id_token(self, id_token):
        uid = self.tokens.get(id_token)
        if uid is None:
            raise InvalidTokenError("Decoding Firebase ID token failed")
        account = self.users[uid]
        return {
            "uid": uid,
            "sub": uid,
            "phone_number": account.phone_number,
            "firebase": {"sign_in_provider": "phone"},
        }

    def get_user(self, uid):
        if uid not in self.users:
            raise UserNotFoundError(f"No user record found for the provided user ID: {uid}")
        return self.users[uid]

    def get_user_by_phone_number(self, phone_number):
        for account in self.users.values():
            if account.phone_number == phone_number:
                return account
        raise UserNotFoundError(f"No user record found for the provided phone number: {phone_number}")

    def create_user(self, phone_number):
        return self.add_user(f"uid-{len(self.users) + 1}", phone_number)

    def create_custom_token(self, uid):
        return f"custom-token-for-{uid}"

    def revoke_refresh_tokens(self, uid):
        account = self.get_user(uid)
        account.tokens_valid_after_timestamp = 1700000000000
        self.tokens = {token: owner for token, owner in self.tokens.items() if owner != uid}


@pytest.fixture
def identity():
    return FakeIdentityProvider()


@pytest.fixture
def client(identity):
    """Test client whose routes see the fake identity provider."""
    app.dependency_overrides[get_identity_provider] = lambda: identity
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# =============================================================================
# Chat fixtures
# =============================================================================

class StepClock:
    """Server clock that advances one second per reading."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


@pytest.fixture
def collection():
    """SQL message collection on a fresh in-memory database."""
    Base.metadata.drop_all(bind=engine)
    messages = SqlMessageCollection(clock=StepClock())
    yield messages
    Base.metadata.drop_all(bind=engine)


# =============================================================================
# Phone auth fakes
# =============================================================================

VALID_CODE = "123456"


def make_session(uid: str = "uid-1", phone_number: str = "+14155550100", expires_in: int = 3600) -> Session:
    return Session(
        uid=uid,
        phone_number=phone_number,
        id_token=f"id-token-for-{uid}",
        refresh_token=f"refresh-{uid}",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


class FakeAuthClient(AuthClient):
    """Records every provider call; errors are injected through attributes."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.send_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.stored: Optional[Session] = None
        self.refreshes = 0

    async def send_verification_code(self, phone_number, recaptcha_token):
        self.calls.append(("send", phone_number, recaptcha_token))
        if self.send_error is not None:
            raise self.send_error
        return VerificationChallenge(handle=f"session-info-{len(self.calls)}", phone_number=phone_number)

    async def confirm_code(self, challenge, code):
        self.calls.append(("confirm", challenge.handle, code))
        if self.confirm_error is not None:
            raise self.confirm_error
        if code != VALID_CODE:
            raise AuthProviderError(AuthErrorCode.INVALID_VERIFICATION_CODE, "INVALID_CODE")
        return make_session(phone_number=challenge.phone_number)

    async def refresh(self, session):
        self.calls.append(("refresh", session.uid))
        if self.refresh_error is not None:
            raise self.refresh_error
        self.refreshes += 1
        return session.model_copy(update={
            "id_token": f"refreshed-{self.refreshes}",
            "expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
        })

    def load_session(self):
        return self.stored

    def save_session(self, session):
        self.stored = session

    def clear_session(self):
        self.stored = None


class FakeWidget(HumanVerificationWidget):
    """Human-verification widget driven by the test."""

    def __init__(self):
        self.token: Optional[str] = None
        self.renders = 0
        self.clears = 0
        self.fail_render = False
        self.on_solved = None
        self.on_expired = None

    async def render(self, on_solved, on_expired):
        if self.fail_render:
            raise RuntimeError("widget script blocked")
        self.renders += 1
        self.token = None
        self.on_solved = on_solved
        self.on_expired = on_expired

    def clear(self):
        self.clears += 1
        self.token = None

    def response_token(self):
        return self.token

    def solve(self, token: str = "captcha-response") -> None:
        self.token = token
        self.on_solved(token)

    def expire(self) -> None:
        self.token = None
        self.on_expired()


@pytest.fixture
def auth_client():
    return FakeAuthClient()


@pytest.fixture
def widget():
    return FakeWidget()
