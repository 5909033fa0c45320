"""
HTTP clients used by the phone auth flow.

FirebaseAuthClient talks to the Identity Toolkit and Secure Token REST APIs
(send code, confirm code, refresh ID token) and optionally persists the
signed-in session to a JSON file so a later run can restore it.
BackendClient posts ID tokens to this project's backend for verification.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from phonechat.config import settings
from phonechat.errors import AuthProviderError, from_provider_message
from phonechat.schemas import Session, VerificationChallenge
from phonechat.utils import utc_now

logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1"


class AuthClient:
    """Client-side identity operations needed by the phone auth flow."""

    async def send_verification_code(self, phone_number: str, recaptcha_token: str) -> VerificationChallenge:
        raise NotImplementedError

    async def confirm_code(self, challenge: VerificationChallenge, code: str) -> Session:
        raise NotImplementedError

    async def refresh(self, session: Session) -> Session:
        raise NotImplementedError

    def load_session(self) -> Optional[Session]:
        return None

    def save_session(self, session: Session) -> None:
        pass

    def clear_session(self) -> None:
        pass


class FirebaseAuthClient(AuthClient):
    """
    Firebase Authentication over REST.

    Args:
        api_key: Web API key of the Firebase project
        http: Shared AsyncClient; one is created when omitted
        emulator_host: host:port of the Auth emulator, if used
        session_path: JSON file used to persist the session between runs
    """

    def __init__(
        self,
        api_key: str = settings.FIREBASE_API_KEY,
        http: Optional[httpx.AsyncClient] = None,
        emulator_host: str = settings.FIREBASE_AUTH_EMULATOR_HOST,
        session_path: Optional[str] = settings.SESSION_FILE or None,
    ):
        self.api_key = api_key
        self.http = http or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)
        self.session_path = Path(session_path) if session_path else None
        if emulator_host:
            self.identity_url = f"http://{emulator_host}/identitytoolkit.googleapis.com/v1"
            self.token_url = f"http://{emulator_host}/securetoken.googleapis.com/v1"
        else:
            self.identity_url = IDENTITY_TOOLKIT_URL
            self.token_url = SECURE_TOKEN_URL

    async def _post(self, url: str, **kwargs) -> dict[str, Any]:
        response = await self.http.post(url, params={"key": self.api_key}, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error:
            error = payload.get("error") or {}
            message = error.get("message") or response.text or response.reason_phrase
            logger.warning(f"Identity provider rejected {url}: {message}")
            raise AuthProviderError(from_provider_message(message), message)
        return payload

    async def send_verification_code(self, phone_number: str, recaptcha_token: str) -> VerificationChallenge:
        payload = await self._post(
            f"{self.identity_url}/accounts:sendVerificationCode",
            json={"phoneNumber": phone_number, "recaptchaToken": recaptcha_token},
        )
        return VerificationChallenge(handle=payload["sessionInfo"], phone_number=phone_number)

    async def confirm_code(self, challenge: VerificationChallenge, code: str) -> Session:
        payload = await self._post(
            f"{self.identity_url}/accounts:signInWithPhoneNumber",
            json={"sessionInfo": challenge.handle, "code": code},
        )
        return Session(
            uid=payload["localId"],
            phone_number=payload.get("phoneNumber", challenge.phone_number),
            id_token=payload["idToken"],
            refresh_token=payload["refreshToken"],
            expires_at=utc_now() + timedelta(seconds=int(payload.get("expiresIn", 3600))),
        )

    async def refresh(self, session: Session) -> Session:
        payload = await self._post(
            f"{self.token_url}/token",
            data={"grant_type": "refresh_token", "refresh_token": session.refresh_token},
        )
        logger.debug(f"ID token refreshed for {session.uid}")
        return Session(
            uid=payload.get("user_id", session.uid),
            phone_number=session.phone_number,
            id_token=payload["id_token"],
            refresh_token=payload.get("refresh_token", session.refresh_token),
            expires_at=utc_now() + timedelta(seconds=int(payload.get("expires_in", 3600))),
        )

    def load_session(self) -> Optional[Session]:
        if self.session_path is None or not self.session_path.exists():
            return None
        try:
            return Session.model_validate_json(self.session_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable session file {self.session_path}: {e}")
            return None

    def save_session(self, session: Session) -> None:
        if self.session_path is None:
            return
        self.session_path.write_text(session.model_dump_json(), encoding="utf-8")

    def clear_session(self) -> None:
        if self.session_path is not None:
            self.session_path.unlink(missing_ok=True)

    async def aclose(self) -> None:
        await self.http.aclose()


class BackendClient:
    """Client for the backend's /api endpoints."""

    def __init__(self, base_url: str = settings.BACKEND_URL, http: Optional[httpx.AsyncClient] = None):
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=settings.HTTP_TIMEOUT)

    async def verify_token(self, id_token: str) -> dict[str, Any]:
        """
        POST verify-token and return the JSON body, whatever the status.

        The body always carries success/error, so callers inspect it
        rather than the status code.
        """
        response = await self.http.post("verify-token", json={"idToken": id_token})
        return response.json()

    async def aclose(self) -> None:
        await self.http.aclose()
