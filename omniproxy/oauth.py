from __future__ import annotations

import base64
import binascii
import contextlib
import hashlib
import json
import logging
import secrets
import threading
import time
import webbrowser
from dataclasses import dataclass, field
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from omniproxy.credentials import Credentials, utcnow
from omniproxy.errors import OAuthError
from omniproxy.providers import Provider
from omniproxy.settings import Settings, get_settings

DEFAULT_EXPIRES_IN_SECONDS = 3600
DEFAULT_LOGIN_TIMEOUT_SECONDS = 300
TOKEN_REQUEST_TIMEOUT_SECONDS = 30.0
CHATGPT_ACCOUNT_CLAIM_PATH = "https://api.openai.com/auth"

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class OAuthClientConfig:
    authorize_url: str
    token_url: str
    client_id: str
    redirect_uri: str
    scope: str
    client_secret: str | None = None
    extra_authorize_params: dict[str, str] = field(default_factory=dict)


def client_config_for(
    provider: Provider, settings: Settings | None = None
) -> OAuthClientConfig:
    if provider is Provider.CLAUDE:
        return OAuthClientConfig(
            authorize_url="https://claude.ai/oauth/authorize",
            token_url="https://claude.ai/api/auth/oauth_token",
            client_id="9d1c250a-e61b-44d5-b14b-f5d8b0c5fdce",
            redirect_uri="http://127.0.0.1:8485/auth/callback",
            scope="user:inference user:profile",
        )
    if provider is Provider.CODEX:
        return OAuthClientConfig(
            authorize_url="https://auth.openai.com/oauth/authorize",
            token_url="https://auth.openai.com/oauth/token",
            client_id="app_EMoamEEZ73f0CkXaXp7hrann",
            redirect_uri="http://localhost:1455/auth/callback",
            scope="openid profile email offline_access",
            extra_authorize_params={
                "id_token_add_organizations": "true",
                "codex_cli_simplified_flow": "true",
                "originator": "omniproxy",
            },
        )

    settings = settings or get_settings()
    if not settings.gemini_oauth_client_id:
        raise OAuthError(
            "Gemini login needs GEMINI_OAUTH_CLIENT_ID (and usually "
            "GEMINI_OAUTH_CLIENT_SECRET) to be configured."
        )
    return OAuthClientConfig(
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        client_id=settings.gemini_oauth_client_id,
        client_secret=settings.gemini_oauth_client_secret,
        redirect_uri="http://127.0.0.1:8085/auth/callback",
        scope=(
            "https://www.googleapis.com/auth/cloud-platform "
            "https://www.googleapis.com/auth/userinfo.email openid"
        ),
        extra_authorize_params={"access_type": "offline", "prompt": "consent"},
    )


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _generate_pkce() -> tuple[str, str]:
    verifier = _base64url(secrets.token_bytes(32))
    challenge = _base64url(hashlib.sha256(verifier.encode("utf-8")).digest())
    return verifier, challenge


def _first_query_param(params: dict[str, list[str]], key: str) -> str | None:
    values = params.get(key)
    if not values:
        return None
    first = values[0].strip()
    return first or None


def _parse_authorization_input(value: str) -> tuple[str | None, str | None]:
    """Accept a bare code, ``code#state`` or a full redirect URL."""
    raw = value.strip()
    if not raw:
        return None, None

    parsed = urlparse(raw)
    if parsed.scheme and parsed.netloc:
        params = parse_qs(parsed.query)
        return _first_query_param(params, "code"), _first_query_param(params, "state")

    if "#" in raw:
        code, state = raw.split("#", 1)
        return code.strip() or None, state.strip() or None

    if "code=" in raw:
        params = parse_qs(raw)
        return _first_query_param(params, "code"), _first_query_param(params, "state")

    return raw, None


def _decode_jwt_claims(token: str) -> dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload_b64 = parts[1]
    padding = "=" * ((4 - len(payload_b64) % 4) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + padding).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _extract_chatgpt_account_id(access_token: str) -> str | None:
    claim = _decode_jwt_claims(access_token).get(CHATGPT_ACCOUNT_CLAIM_PATH)
    if isinstance(claim, dict):
        account_id = claim.get("chatgpt_account_id")
        if isinstance(account_id, str) and account_id.strip():
            return account_id.strip()
    return None


def _extract_email(body: dict[str, Any]) -> str | None:
    email = body.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip()
    id_token = body.get("id_token")
    if isinstance(id_token, str):
        claimed = _decode_jwt_claims(id_token).get("email")
        if isinstance(claimed, str) and claimed.strip():
            return claimed.strip()
    account = body.get("account")
    if isinstance(account, dict):
        address = account.get("email_address")
        if isinstance(address, str) and address.strip():
            return address.strip()
    return None


class _OAuthCallbackHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        return

    def _reply(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        server = self.server
        parsed = urlparse(self.path)
        if parsed.path != getattr(server, "callback_path", "/auth/callback"):
            self._reply(404, b"Not found")
            return

        params = parse_qs(parsed.query)
        error = _first_query_param(params, "error")
        if error:
            setattr(server, "auth_error", error)
            self._reply(400, b"Authorization failed")
            return
        if _first_query_param(params, "state") != getattr(server, "expected_state", None):
            self._reply(400, b"State mismatch")
            return
        code = _first_query_param(params, "code")
        if not code:
            self._reply(400, b"Missing authorization code")
            return

        setattr(server, "auth_code", code)
        self._reply(
            200,
            b"<!doctype html><html><body><p>Authentication successful. "
            b"Return to your terminal.</p></body></html>",
        )


def _start_callback_server(
    host: str, port: int, expected_state: str, callback_path: str
) -> ThreadingHTTPServer | None:
    try:
        server = ThreadingHTTPServer((host, port), _OAuthCallbackHandler)
    except OSError as exc:
        logger.warning("oauth_callback_unavailable host=%s port=%d error=%s", host, port, exc)
        return None

    setattr(server, "expected_state", expected_state)
    setattr(server, "callback_path", callback_path)
    setattr(server, "auth_code", None)
    setattr(server, "auth_error", None)

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def _wait_for_callback_code(server: ThreadingHTTPServer, timeout_seconds: int) -> str | None:
    deadline = time.time() + max(1, timeout_seconds)
    while time.time() < deadline:
        error = getattr(server, "auth_error", None)
        if error:
            raise OAuthError(f"Authorization failed: {error}")
        code = getattr(server, "auth_code", None)
        if isinstance(code, str) and code.strip():
            return code.strip()
        time.sleep(0.1)
    return None


def _stop_callback_server(server: ThreadingHTTPServer) -> None:
    server.shutdown()
    with contextlib.suppress(OSError):
        server.server_close()


def build_authorize_url(config: OAuthClientConfig, *, state: str, challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
        **config.extra_authorize_params,
    }
    return f"{config.authorize_url}?{urlencode(params)}"


def _post_token_request(config: OAuthClientConfig, form: dict[str, str]) -> dict[str, Any]:
    data = {"client_id": config.client_id, **form}
    if config.client_secret:
        data["client_secret"] = config.client_secret
    try:
        response = httpx.post(
            config.token_url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=TOKEN_REQUEST_TIMEOUT_SECONDS,
        )
    except httpx.RequestError as exc:
        raise OAuthError(f"OAuth token request failed: {exc}") from exc
    if response.status_code >= 400:
        raise OAuthError(
            f"OAuth token request failed ({response.status_code}): {response.text}"
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise OAuthError("OAuth token response was not valid JSON.") from exc
    if not isinstance(body, dict):
        raise OAuthError("OAuth token response was not a JSON object.")
    return body


def _credentials_from_token_response(
    provider: Provider, body: dict[str, Any], *, fallback_refresh_token: str = ""
) -> Credentials:
    access_token = str(body.get("access_token") or "").strip()
    if not access_token:
        raise OAuthError("OAuth response missing access_token.")
    refresh_token = str(body.get("refresh_token") or "").strip() or fallback_refresh_token
    expires_in = body.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        expires_in = DEFAULT_EXPIRES_IN_SECONDS

    account_id = (
        _extract_chatgpt_account_id(access_token) if provider is Provider.CODEX else None
    )
    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=utcnow() + timedelta(seconds=int(expires_in)),
        account_id=account_id,
        email=_extract_email(body),
    )


def exchange_code(
    provider: Provider,
    config: OAuthClientConfig,
    *,
    code: str,
    verifier: str,
) -> Credentials:
    body = _post_token_request(
        config,
        {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": config.redirect_uri,
        },
    )
    return _credentials_from_token_response(provider, body)


def refresh_credentials(
    provider: Provider,
    refresh_token: str,
    *,
    settings: Settings | None = None,
) -> Credentials:
    if not refresh_token:
        raise OAuthError(f"No refresh token stored for this {provider.value} account.")
    config = client_config_for(provider, settings)
    body = _post_token_request(
        config,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
    )
    return _credentials_from_token_response(
        provider, body, fallback_refresh_token=refresh_token
    )


def login(
    provider: Provider,
    *,
    settings: Settings | None = None,
    open_browser: bool = True,
    manual_code: str | None = None,
    timeout_seconds: int = DEFAULT_LOGIN_TIMEOUT_SECONDS,
    prompt: Callable[[str], str] = input,
) -> Credentials:
    """Run the interactive authorization-code + PKCE flow for ``provider``.

    The local callback server is tried first. Without a browser or a callback
    the user pastes the code (or the whole redirect URL) instead.
    """
    config = client_config_for(provider, settings)
    verifier, challenge = _generate_pkce()
    state = secrets.token_hex(16)
    auth_url = build_authorize_url(config, state=state, challenge=challenge)

    code: str | None = None
    if manual_code:
        code, input_state = _parse_authorization_input(manual_code)
        if input_state and input_state != state:
            raise OAuthError("State mismatch in provided code/URL.")
    else:
        server: ThreadingHTTPServer | None = None
        redirect = urlparse(config.redirect_uri)
        if redirect.hostname in {"localhost", "127.0.0.1"} and redirect.port:
            server = _start_callback_server(
                host="127.0.0.1",
                port=redirect.port,
                expected_state=state,
                callback_path=redirect.path or "/auth/callback",
            )

        print(f"\nOpen this URL in your browser and complete sign-in:\n{auth_url}\n")
        browser_opened = False
        if open_browser:
            try:
                browser_opened = bool(webbrowser.open(auth_url))
            except webbrowser.Error:
                browser_opened = False

        try:
            if server is not None and browser_opened:
                print(f"Waiting for OAuth callback on {config.redirect_uri} ...")
                code = _wait_for_callback_code(server, timeout_seconds)
                if not code:
                    print("Callback not received in time.")
        finally:
            if server is not None:
                _stop_callback_server(server)

        if not code:
            pasted = prompt("Paste authorization code (or full redirect URL): ")
            code, input_state = _parse_authorization_input(pasted)
            if input_state and input_state != state:
                raise OAuthError("State mismatch in pasted code/URL.")

    if not code:
        raise OAuthError("Missing authorization code.")
    return exchange_code(provider, config, code=code, verifier=verifier)
