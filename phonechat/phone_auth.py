"""
Phone number sign-in flow.

ChallengeIssuer -> CodeVerifier -> SessionHolder, composed by PhoneAuthFlow.
All view state (visible screen, button states, challenge handle, status line)
lives in an AuthViewState owned by the flow; handlers never raise to the
caller for provider or transport failures, they report them on the status
line instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from phonechat.auth_client import AuthClient, BackendClient
from phonechat.config import settings
from phonechat.errors import AuthProviderError, CHALLENGE_ENDING_CODES, describe_auth_error
from phonechat.schemas import Session, VerificationChallenge
from phonechat.status import Status, StatusKind

logger = logging.getLogger(__name__)

MIN_PHONE_LENGTH = 8
CODE_LENGTH = 6

SEND_LABEL = "Send Verification Code"
SENDING_LABEL = "Sending Code..."
VERIFY_LABEL = "Verify & Sign In"
VERIFYING_LABEL = "Verifying..."


class Screen(str, Enum):
    PHONE = "phone"
    CODE = "code"
    SIGNED_IN = "signed_in"


class InputValidationError(ValueError):
    """Local input check failed; nothing was sent."""


class PhoneValidationError(InputValidationError):
    pass


class CodeValidationError(InputValidationError):
    pass


class NotSignedInError(Exception):
    pass


def validate_phone_number(phone_number: str) -> str:
    """Return the trimmed number or raise PhoneValidationError."""
    phone_number = (phone_number or "").strip()
    if len(phone_number) < MIN_PHONE_LENGTH:
        raise PhoneValidationError("Please enter a valid phone number with country code")
    if not phone_number.startswith("+"):
        raise PhoneValidationError("Phone number must start with + and include country code")
    return phone_number


def validate_code(code: str) -> str:
    code = (code or "").strip()
    # str.isdigit() also accepts non-ASCII digits such as "١" or "²"
    if len(code) != CODE_LENGTH or not (code.isascii() and code.isdigit()):
        raise CodeValidationError("Please enter the complete 6-digit verification code")
    return code


def describe_failure(error: Exception) -> str:
    if isinstance(error, AuthProviderError):
        return describe_auth_error(error)
    return f"An error occurred: {error}"


class HumanVerificationWidget:
    """
    reCAPTCHA-style challenge gating the send-code action.

    render() shows a fresh widget and registers the callbacks; the widget
    calls on_solved with its response token and on_expired when that token
    lapses. clear() destroys it.
    """

    async def render(self, on_solved: Callable[[str], None], on_expired: Callable[[], None]) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def response_token(self) -> Optional[str]:
        raise NotImplementedError


@dataclass
class AuthViewState:
    screen: Screen = Screen.PHONE
    send_enabled: bool = False
    send_label: str = SEND_LABEL
    verify_enabled: bool = True
    verify_label: str = VERIFY_LABEL
    code_input: str = ""
    challenge: Optional[VerificationChallenge] = None
    user_phone: Optional[str] = None
    user_id: Optional[str] = None
    id_token: Optional[str] = None
    # Set instead of id_token when the token could not be obtained
    token_error: Optional[str] = None
    backend_response: Optional[dict[str, Any]] = None
    status: Optional[Status] = None

    def show(self, text: str, kind: StatusKind = StatusKind.INFO) -> None:
        self.status = Status(text, kind)


class SessionHolder:
    """Holds the signed-in session and hands out fresh bearer tokens."""

    def __init__(self, client: AuthClient, refresh_skew: float = settings.TOKEN_REFRESH_SKEW):
        self.client = client
        self.refresh_skew = refresh_skew
        self.session: Optional[Session] = None

    def establish(self, session: Session) -> None:
        self.client.save_session(session)
        self.session = session

    def restore(self) -> Optional[Session]:
        session = self.client.load_session()
        if session is not None:
            logger.info(f"User already signed in: {session.uid}")
            self.session = session
        return session

    async def current_token(self, force_refresh: bool = False) -> str:
        if self.session is None:
            raise NotSignedInError("No user signed in")
        if force_refresh or self.session.expires_within(self.refresh_skew):
            self.session = await self.client.refresh(self.session)
            self.client.save_session(self.session)
        return self.session.id_token

    def sign_out(self) -> None:
        self.client.clear_session()
        self.session = None


class ChallengeIssuer:
    """Validates the phone number and requests a verification code."""

    def __init__(
        self,
        client: AuthClient,
        widget: HumanVerificationWidget,
        state: AuthViewState,
        reset_delay: float = settings.RECAPTCHA_RESET_DELAY,
    ):
        self.client = client
        self.widget = widget
        self.state = state
        self.reset_delay = reset_delay
        self.widget_ready = False

    async def init_widget(self) -> None:
        if self.widget_ready:
            logger.debug("reCAPTCHA already initialized")
            return
        try:
            await self.widget.render(on_solved=self._on_solved, on_expired=self._on_expired)
        except Exception as e:
            logger.error(f"reCAPTCHA render error: {e}")
            self.state.show("Failed to load reCAPTCHA. Please refresh the page.", StatusKind.ERROR)
            return
        self.widget_ready = True

    async def reset_widget(self) -> None:
        """Destroy the widget and render a fresh one after a short delay."""
        if self.widget_ready:
            try:
                self.widget.clear()
            except Exception as e:
                logger.error(f"Error clearing reCAPTCHA: {e}")
            self.widget_ready = False
        await asyncio.sleep(self.reset_delay)
        await self.init_widget()

    def _on_solved(self, token: str) -> None:
        logger.debug("reCAPTCHA solved")
        self.state.send_enabled = True

    def _on_expired(self) -> None:
        logger.warning("reCAPTCHA expired")
        self.state.show("reCAPTCHA expired. Please solve it again.", StatusKind.WARNING)
        self.state.send_enabled = False

    async def send_code(self, phone_number: str) -> bool:
        state = self.state
        try:
            phone_number = validate_phone_number(phone_number)
        except PhoneValidationError as e:
            state.show(str(e), StatusKind.ERROR)
            return False

        recaptcha_token = self.widget.response_token()
        if not recaptcha_token:
            state.show("Please complete the reCAPTCHA first", StatusKind.ERROR)
            return False

        state.send_enabled = False
        state.send_label = SENDING_LABEL
        logger.info(f"Sending verification code to {phone_number}")

        try:
            challenge = await self.client.send_verification_code(phone_number, recaptcha_token)
        except (AuthProviderError, httpx.HTTPError) as e:
            logger.error(f"Error sending verification code: {e}")
            await self._send_failed(e)
            return False
        except Exception as e:
            logger.error(f"Unexpected error sending verification code: {e}", exc_info=e)
            await self._send_failed(e)
            return False

        state.challenge = challenge
        state.screen = Screen.CODE
        state.code_input = ""
        state.show("Verification code sent! Check your phone.", StatusKind.SUCCESS)
        return True

    async def _send_failed(self, error: Exception) -> None:
        state = self.state
        state.show(describe_failure(error), StatusKind.ERROR)
        state.send_enabled = True
        state.send_label = SEND_LABEL
        await self.reset_widget()


class CodeVerifier:
    """Confirms the SMS code against the held challenge."""

    def __init__(
        self,
        client: AuthClient,
        state: AuthViewState,
        holder: SessionHolder,
        on_restart: Callable[[], Awaitable[None]],
        on_signed_in: Callable[[], Awaitable[None]],
    ):
        self.client = client
        self.state = state
        self.holder = holder
        self.on_restart = on_restart
        self.on_signed_in = on_signed_in

    async def verify_code(self, code: str) -> bool:
        state = self.state
        try:
            code = validate_code(code)
        except CodeValidationError as e:
            state.show(str(e), StatusKind.ERROR)
            return False

        if state.challenge is None:
            state.show("Please request a verification code first", StatusKind.ERROR)
            await self.on_restart()
            return False

        state.verify_enabled = False
        state.verify_label = VERIFYING_LABEL
        logger.info("Verifying code...")

        try:
            session = await self.client.confirm_code(state.challenge, code)
            self.holder.establish(session)
        except (AuthProviderError, httpx.HTTPError) as e:
            logger.error(f"Error verifying code: {e}")
            self._verify_failed(e)
            if isinstance(e, AuthProviderError) and e.code in CHALLENGE_ENDING_CODES:
                state.challenge = None
                await self.on_restart()
            return False
        except Exception as e:
            # The challenge is kept so the same code can be retried
            logger.error(f"Unexpected error verifying code: {e}", exc_info=e)
            self._verify_failed(e)
            return False

        state.challenge = None
        logger.info(f"User signed in successfully: {session.uid}")
        state.show("Successfully signed in!", StatusKind.SUCCESS)
        await self.on_signed_in()
        return True

    def _verify_failed(self, error: Exception) -> None:
        state = self.state
        state.show(describe_failure(error), StatusKind.ERROR)
        state.verify_enabled = True
        state.verify_label = VERIFY_LABEL


class PhoneAuthFlow:
    """
    The whole sign-in page: start-up, send, verify, backend check, sign-out.

    Args:
        client: identity client (FirebaseAuthClient in production)
        widget: human-verification widget gating send
        backend: client for this project's backend
        configured: False when no Firebase API key was supplied
    """

    def __init__(
        self,
        client: AuthClient,
        widget: HumanVerificationWidget,
        backend: Optional[BackendClient] = None,
        configured: bool = settings.firebase_configured,
        reset_delay: float = settings.RECAPTCHA_RESET_DELAY,
        refresh_skew: float = settings.TOKEN_REFRESH_SKEW,
    ):
        self.state = AuthViewState()
        self.backend = backend or BackendClient()
        self.configured = configured
        self.reset_delay = reset_delay
        self.holder = SessionHolder(client, refresh_skew)
        self.issuer = ChallengeIssuer(client, widget, self.state, reset_delay)
        self.verifier = CodeVerifier(
            client,
            self.state,
            self.holder,
            on_restart=self.reset_form,
            on_signed_in=self.show_user,
        )

    async def start(self) -> bool:
        if not self.configured:
            self.state.show("Please configure your Firebase credentials!", StatusKind.ERROR)
            self.state.send_enabled = False
            return False

        await asyncio.sleep(self.reset_delay)
        await self.issuer.init_widget()
        if self.holder.restore() is not None:
            await self.show_user()
        return True

    async def send_code(self, phone_number: str) -> bool:
        return await self.issuer.send_code(phone_number)

    async def verify_code(self, code: str) -> bool:
        self.state.code_input = code
        return await self.verifier.verify_code(code)

    async def show_user(self) -> None:
        state = self.state
        session = self.holder.session
        state.screen = Screen.SIGNED_IN
        state.user_phone = session.phone_number or "N/A"
        state.user_id = session.uid
        state.id_token = None
        state.token_error = None
        try:
            state.id_token = await self.holder.current_token()
        except (AuthProviderError, httpx.HTTPError) as e:
            logger.error(f"Error getting ID token: {e}")
            state.token_error = f"Error getting token: {e}"
        except Exception as e:
            logger.error(f"Unexpected error getting ID token: {e}", exc_info=e)
            state.token_error = f"Error getting token: {e}"

    def copy_token(self, clipboard: Callable[[str], None]) -> bool:
        """Hand the current ID token to a clipboard writer."""
        state = self.state
        if not state.id_token:
            state.show("No valid token to copy", StatusKind.ERROR)
            return False
        try:
            clipboard(state.id_token)
        except Exception as e:
            logger.error(f"Error copying token: {e}")
            state.show(f"Failed to copy token: {e}", StatusKind.ERROR)
            return False
        state.show("Token copied to clipboard!", StatusKind.SUCCESS)
        return True

    async def verify_with_backend(self) -> Optional[dict[str, Any]]:
        """Send a freshly refreshed ID token to the backend and record its answer."""
        state = self.state
        if self.holder.session is None:
            state.show("No user signed in", StatusKind.ERROR)
            return None

        state.show("Verifying token with backend...", StatusKind.INFO)
        try:
            id_token = await self.holder.current_token(force_refresh=True)
        except (AuthProviderError, httpx.HTTPError) as e:
            logger.error(f"Error refreshing ID token: {e}")
            state.show(describe_failure(e), StatusKind.ERROR)
            return None
        except Exception as e:
            logger.error(f"Unexpected error refreshing ID token: {e}", exc_info=e)
            state.show(describe_failure(e), StatusKind.ERROR)
            return None

        logger.debug(f"Token length: {len(id_token)}, segments: {len(id_token.split('.'))}")

        try:
            data = await self.backend.verify_token(id_token)
        except Exception as e:
            logger.error(f"Error verifying with backend: {e}")
            state.show(f"Error connecting to backend: {e}", StatusKind.ERROR)
            state.backend_response = {"success": False, "error": str(e)}
            return None

        state.backend_response = data
        if data.get("success"):
            logger.info(f"Backend verification result: {data}")
            state.show("Token verified successfully by backend!", StatusKind.SUCCESS)
        else:
            state.show(f"Backend verification failed: {data.get('error')}", StatusKind.ERROR)
        return data

    async def sign_out(self) -> None:
        try:
            self.holder.sign_out()
        except OSError as e:
            logger.error(f"Error signing out: {e}")
            self.state.show(f"Error signing out: {e}", StatusKind.ERROR)
            return
        logger.info("User signed out")
        await self.reset_form()
        self.state.show("Signed out successfully", StatusKind.INFO)

    async def reset_form(self) -> None:
        """Back to the phone-entry screen with a fresh widget; the status line is kept."""
        logger.info("Resetting form...")
        state = self.state
        state.screen = Screen.PHONE
        state.code_input = ""
        state.send_enabled = True
        state.send_label = SEND_LABEL
        state.verify_enabled = True
        state.verify_label = VERIFY_LABEL
        state.challenge = None
        state.user_phone = None
        state.user_id = None
        state.id_token = None
        state.token_error = None
        state.backend_response = None
        await self.issuer.reset_widget()
