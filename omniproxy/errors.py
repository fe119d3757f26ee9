from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Failure surfaced to gateway callers as ``{"error": message}``."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def payload(self) -> dict[str, Any]:
        return {"error": self.message}


class ClientRequestError(GatewayError):
    status_code = 400


class NoAccountAvailableError(GatewayError):
    status_code = 503


class UpstreamTransportError(GatewayError):
    status_code = 502


class StateError(Exception):
    pass


class DuplicateAccountError(StateError):
    def __init__(self, provider: str, name: str) -> None:
        super().__init__(f"Account already exists: {provider}:{name}")
        self.provider = provider
        self.name = name


class AccountNotFoundError(StateError):
    def __init__(self, provider: str, name: str) -> None:
        super().__init__(f"Account not found: {provider}:{name}")
        self.provider = provider
        self.name = name


class OAuthError(RuntimeError):
    pass
