"""
Tests for the phone sign-in flow.

Tests cover:
- Local validation of phone numbers and codes
- ChallengeIssuer: widget gating, send success/failure, widget reset
- CodeVerifier: wrong code, expired challenge, missing challenge, success
- SessionHolder: refresh on expiry, persistence, sign-out
- PhoneAuthFlow: start-up, restore, backend verification, sign-out
"""

import httpx
import pytest

from phonechat.conftest import VALID_CODE, make_session
from phonechat.errors import AuthErrorCode, AuthProviderError
from phonechat.main import app
from phonechat.auth_client import BackendClient, FirebaseAuthClient
from phonechat.identity import get_identity_provider
from phonechat.phone_auth import (
    NotSignedInError,
    PhoneAuthFlow,
    PhoneValidationError,
    CodeValidationError,
    Screen,
    SEND_LABEL,
    SessionHolder,
    VERIFY_LABEL,
    validate_code,
    validate_phone_number,
)
from phonechat.status import StatusKind


PHONE = "+14155550100"


class StubBackend:
    """Backend client returning a canned body."""

    def __init__(self, body=None, error=None):
        self.body = body if body is not None else {"success": True, "user": {"uid": "uid-1"}}
        self.error = error
        self.tokens = []

    async def verify_token(self, id_token):
        self.tokens.append(id_token)
        if self.error is not None:
            raise self.error
        return self.body


def make_flow(auth_client, widget, backend=None, configured=True):
    return PhoneAuthFlow(
        auth_client,
        widget,
        backend=backend or StubBackend(),
        configured=configured,
        reset_delay=0,
    )


async def started_flow(auth_client, widget, **kwargs):
    flow = make_flow(auth_client, widget, **kwargs)
    await flow.start()
    return flow


async def signed_in_flow(auth_client, widget, **kwargs):
    flow = await started_flow(auth_client, widget, **kwargs)
    widget.solve()
    await flow.send_code(PHONE)
    await flow.verify_code(VALID_CODE)
    return flow


class TestValidation:

    def test_valid_phone_number_is_trimmed(self):
        assert validate_phone_number("  +14155550100 ") == PHONE

    def test_short_phone_number(self):
        with pytest.raises(PhoneValidationError, match="valid phone number with country code"):
            validate_phone_number("+1415")

    def test_phone_number_without_plus(self):
        with pytest.raises(PhoneValidationError, match="must start with \\+"):
            validate_phone_number("14155550100")

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12345a", "١٢٣٤٥٦", "12345²"])
    def test_bad_codes(self, code):
        with pytest.raises(CodeValidationError, match="complete 6-digit"):
            validate_code(code)

    def test_good_code(self):
        assert validate_code("123456") == "123456"


class TestChallengeIssuer:

    @pytest.mark.asyncio
    async def test_send_is_disabled_until_widget_solved(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)

        assert flow.state.send_enabled is False
        widget.solve()
        assert flow.state.send_enabled is True

    @pytest.mark.asyncio
    async def test_unsolved_widget_blocks_send(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)

        assert await flow.send_code(PHONE) is False

        assert auth_client.calls == []
        assert flow.state.status.text == "Please complete the reCAPTCHA first"

    @pytest.mark.asyncio
    async def test_invalid_number_sends_nothing(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()

        assert await flow.send_code("4155550100") is False

        assert auth_client.calls == []
        assert flow.state.status.text == "Phone number must start with + and include country code"
        assert flow.state.screen is Screen.PHONE

    @pytest.mark.asyncio
    async def test_successful_send_moves_to_code_screen(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve("captcha-ok")

        assert await flow.send_code(PHONE) is True

        assert auth_client.calls == [("send", PHONE, "captcha-ok")]
        assert flow.state.screen is Screen.CODE
        assert flow.state.challenge.phone_number == PHONE
        assert flow.state.status.text == "Verification code sent! Check your phone."
        assert flow.state.status.kind is StatusKind.SUCCESS

    @pytest.mark.asyncio
    async def test_send_failure_resets_widget(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        auth_client.send_error = AuthProviderError(
            AuthErrorCode.TOO_MANY_REQUESTS, "TOO_MANY_ATTEMPTS_TRY_LATER"
        )

        assert await flow.send_code(PHONE) is False

        assert flow.state.status.text == "Too many attempts. Wait before trying again"
        assert flow.state.screen is Screen.PHONE
        assert flow.state.send_label == SEND_LABEL
        assert widget.clears == 1
        assert widget.renders == 2
        assert widget.response_token() is None

    @pytest.mark.asyncio
    async def test_unmapped_failure_echoes_provider_message(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        auth_client.send_error = AuthProviderError(AuthErrorCode.UNKNOWN, "OPERATION_NOT_ALLOWED")

        await flow.send_code(PHONE)

        assert flow.state.status.text == "An error occurred: OPERATION_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_widget_expiry_disables_send(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()

        widget.expire()

        assert flow.state.send_enabled is False
        assert flow.state.status.kind is StatusKind.WARNING
        assert flow.state.status.text == "reCAPTCHA expired. Please solve it again."

    @pytest.mark.asyncio
    async def test_widget_render_failure(self, auth_client, widget):
        widget.fail_render = True

        flow = await started_flow(auth_client, widget)

        assert flow.state.status.text == "Failed to load reCAPTCHA. Please refresh the page."
        assert flow.issuer.widget_ready is False

    @pytest.mark.asyncio
    async def test_unexpected_send_error_releases_form(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        auth_client.send_error = RuntimeError("boom")

        assert await flow.send_code(PHONE) is False

        assert flow.state.status.text == "An error occurred: boom"
        assert flow.state.status.kind is StatusKind.ERROR
        assert flow.state.send_enabled is True
        assert flow.state.send_label == SEND_LABEL
        assert widget.renders == 2

    @pytest.mark.asyncio
    async def test_malformed_provider_reply_releases_form(self, widget):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
        client = FirebaseAuthClient(api_key="test-api-key", http=http, emulator_host="", session_path=None)
        flow = await started_flow(client, widget)
        widget.solve()

        assert await flow.send_code(PHONE) is False

        assert flow.state.status.kind is StatusKind.ERROR
        assert flow.state.send_enabled is True
        assert flow.state.send_label == SEND_LABEL
        assert flow.state.screen is Screen.PHONE
        await http.aclose()


class TestCodeVerifier:

    @pytest.mark.asyncio
    async def test_short_code_is_rejected_locally(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        await flow.send_code(PHONE)

        assert await flow.verify_code("123") is False

        assert [call[0] for call in auth_client.calls] == ["send"]
        assert flow.state.status.text == "Please enter the complete 6-digit verification code"

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_challenge(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        await flow.send_code(PHONE)
        challenge = flow.state.challenge

        assert await flow.verify_code("000000") is False

        assert flow.state.status.text == "Invalid verification code"
        assert flow.state.challenge == challenge
        assert flow.state.screen is Screen.CODE
        assert flow.state.verify_enabled is True

        assert await flow.verify_code(VALID_CODE) is True
        assert flow.state.screen is Screen.SIGNED_IN

    @pytest.mark.asyncio
    async def test_expired_code_restarts_flow(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        await flow.send_code(PHONE)
        auth_client.confirm_error = AuthProviderError(AuthErrorCode.CODE_EXPIRED, "SESSION_EXPIRED")

        assert await flow.verify_code(VALID_CODE) is False

        assert flow.state.challenge is None
        assert flow.state.screen is Screen.PHONE
        assert flow.state.status.text == "Code expired. Request a new one"

    @pytest.mark.asyncio
    async def test_missing_challenge_restarts_flow(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)

        assert await flow.verify_code(VALID_CODE) is False

        assert flow.state.status.text == "Please request a verification code first"
        assert flow.state.screen is Screen.PHONE
        assert auth_client.calls == []

    @pytest.mark.asyncio
    async def test_success_establishes_session(self, auth_client, widget):
        flow = await signed_in_flow(auth_client, widget)

        assert flow.state.screen is Screen.SIGNED_IN
        assert flow.state.status.text == "Successfully signed in!"
        assert flow.state.challenge is None
        assert flow.state.user_phone == PHONE
        assert flow.state.user_id == "uid-1"
        assert flow.state.id_token == "id-token-for-uid-1"
        assert auth_client.stored is not None

    @pytest.mark.asyncio
    async def test_unexpected_confirm_error_keeps_challenge(self, auth_client, widget):
        flow = await started_flow(auth_client, widget)
        widget.solve()
        await flow.send_code(PHONE)
        challenge = flow.state.challenge
        auth_client.confirm_error = RuntimeError("boom")

        assert await flow.verify_code(VALID_CODE) is False

        assert flow.state.status.text == "An error occurred: boom"
        assert flow.state.verify_enabled is True
        assert flow.state.verify_label == VERIFY_LABEL
        assert flow.state.challenge == challenge
        assert flow.state.screen is Screen.CODE

    @pytest.mark.asyncio
    async def test_session_save_failure_is_reported(self, auth_client, widget, monkeypatch):
        def disk_full(session):
            raise OSError("disk full")

        monkeypatch.setattr(auth_client, "save_session", disk_full)
        flow = await started_flow(auth_client, widget)
        widget.solve()
        await flow.send_code(PHONE)

        assert await flow.verify_code(VALID_CODE) is False

        assert flow.state.status.text == "An error occurred: disk full"
        assert flow.state.verify_enabled is True
        assert flow.holder.session is None
        assert flow.state.screen is Screen.CODE


class TestSessionHolder:

    @pytest.mark.asyncio
    async def test_no_session(self, auth_client):
        holder = SessionHolder(auth_client)

        with pytest.raises(NotSignedInError):
            await holder.current_token()

    @pytest.mark.asyncio
    async def test_fresh_token_is_reused(self, auth_client):
        holder = SessionHolder(auth_client, refresh_skew=300)
        holder.establish(make_session(expires_in=3600))

        assert await holder.current_token() == "id-token-for-uid-1"
        assert auth_client.refreshes == 0

    @pytest.mark.asyncio
    async def test_near_expiry_token_is_refreshed(self, auth_client):
        holder = SessionHolder(auth_client, refresh_skew=300)
        holder.establish(make_session(expires_in=60))

        assert await holder.current_token() == "refreshed-1"
        assert auth_client.stored.id_token == "refreshed-1"

    @pytest.mark.asyncio
    async def test_force_refresh(self, auth_client):
        holder = SessionHolder(auth_client)
        holder.establish(make_session())

        assert await holder.current_token(force_refresh=True) == "refreshed-1"
        assert await holder.current_token(force_refresh=True) == "refreshed-2"

    def test_sign_out_clears_persisted_session(self, auth_client):
        holder = SessionHolder(auth_client)
        holder.establish(make_session())

        holder.sign_out()

        assert holder.session is None
        assert auth_client.stored is None


class TestPhoneAuthFlow:

    @pytest.mark.asyncio
    async def test_unconfigured_start(self, auth_client, widget):
        flow = make_flow(auth_client, widget, configured=False)

        assert await flow.start() is False

        assert flow.state.status.text == "Please configure your Firebase credentials!"
        assert widget.renders == 0

    @pytest.mark.asyncio
    async def test_start_restores_persisted_session(self, auth_client, widget):
        auth_client.stored = make_session(uid="uid-9", phone_number=None)

        flow = await started_flow(auth_client, widget)

        assert flow.state.screen is Screen.SIGNED_IN
        assert flow.state.user_id == "uid-9"
        assert flow.state.user_phone == "N/A"

    @pytest.mark.asyncio
    async def test_verify_with_backend_sends_refreshed_token(self, auth_client, widget):
        backend = StubBackend()
        flow = await signed_in_flow(auth_client, widget, backend=backend)

        data = await flow.verify_with_backend()

        assert data["success"] is True
        assert backend.tokens == ["refreshed-1"]
        assert flow.state.backend_response == data
        assert flow.state.status.text == "Token verified successfully by backend!"

    @pytest.mark.asyncio
    async def test_backend_rejection(self, auth_client, widget):
        backend = StubBackend(body={"success": False, "error": "Invalid token"})
        flow = await signed_in_flow(auth_client, widget, backend=backend)

        await flow.verify_with_backend()

        assert flow.state.status.text == "Backend verification failed: Invalid token"
        assert flow.state.status.kind is StatusKind.ERROR

    @pytest.mark.asyncio
    async def test_backend_unreachable(self, auth_client, widget):
        backend = StubBackend(error=httpx.ConnectError("connection refused"))
        flow = await signed_in_flow(auth_client, widget, backend=backend)

        assert await flow.verify_with_backend() is None

        assert flow.state.status.text == "Error connecting to backend: connection refused"
        assert flow.state.backend_response == {"success": False, "error": "connection refused"}

    @pytest.mark.asyncio
    async def test_verify_with_backend_requires_sign_in(self, auth_client, widget):
        backend = StubBackend()
        flow = await started_flow(auth_client, widget, backend=backend)

        assert await flow.verify_with_backend() is None

        assert flow.state.status.text == "No user signed in"
        assert backend.tokens == []

    @pytest.mark.asyncio
    async def test_sign_out_returns_to_phone_screen(self, auth_client, widget):
        flow = await signed_in_flow(auth_client, widget)

        await flow.sign_out()

        assert flow.state.screen is Screen.PHONE
        assert flow.state.user_id is None
        assert flow.state.id_token is None
        assert flow.state.status.text == "Signed out successfully"
        assert auth_client.stored is None
        assert flow.holder.session is None

    @pytest.mark.asyncio
    async def test_backend_round_trip(self, auth_client, widget, identity):
        """The refreshed token is accepted by the real backend app."""
        identity.add_user("uid-1", PHONE)
        identity.issue_token("uid-1", "refreshed-1")
        app.dependency_overrides[get_identity_provider] = lambda: identity
        http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver/api/",
        )
        try:
            flow = await signed_in_flow(auth_client, widget, backend=BackendClient(http=http))
            data = await flow.verify_with_backend()
        finally:
            await http.aclose()
            app.dependency_overrides.clear()

        assert data["success"] is True
        assert data["user"]["uid"] == "uid-1"
        assert data["user"]["phoneNumber"] == PHONE
        assert flow.state.status.text == "Token verified successfully by backend!"

    @pytest.mark.asyncio
    async def test_token_failure_is_kept_apart_from_token(self, auth_client, widget):
        auth_client.stored = make_session(expires_in=60)
        auth_client.refresh_error = RuntimeError("offline")

        flow = await started_flow(auth_client, widget)

        assert flow.state.screen is Screen.SIGNED_IN
        assert flow.state.id_token is None
        assert flow.state.token_error == "Error getting token: offline"

        copied = []
        assert flow.copy_token(copied.append) is False
        assert copied == []
        assert flow.state.status.text == "No valid token to copy"

    @pytest.mark.asyncio
    async def test_copy_token(self, auth_client, widget):
        flow = await signed_in_flow(auth_client, widget)
        copied = []

        assert flow.copy_token(copied.append) is True

        assert copied == ["id-token-for-uid-1"]
        assert flow.state.status.text == "Token copied to clipboard!"

    @pytest.mark.asyncio
    async def test_unexpected_refresh_error_before_backend_call(self, auth_client, widget):
        backend = StubBackend()
        flow = await signed_in_flow(auth_client, widget, backend=backend)
        auth_client.refresh_error = RuntimeError("offline")

        assert await flow.verify_with_backend() is None

        assert flow.state.status.text == "An error occurred: offline"
        assert backend.tokens == []
