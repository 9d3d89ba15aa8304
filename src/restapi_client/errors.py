"""Typed errors raised by the request executor and the token providers."""

from typing import Any


class RestClientError(Exception):
    """Base class for every error raised by restapi_client.

    Carries a stable ``code`` for programmatic handling plus a ``details`` dict
    with whatever context the raising site had at hand.
    """

    code = "REST_CLIENT_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ConfigError(RestClientError):
    """Missing or invalid construction input. No request was attempted."""

    code = "CONFIG_ERROR"


class TLSError(RestClientError):
    """Client certificate or key material could not be loaded."""

    code = "TLS_ERROR"


class TokenError(RestClientError):
    """An identity provider call failed."""

    code = "TOKEN_ERROR"

    def __init__(self, message: str, provider: str, details: dict[str, Any] | None = None):
        super().__init__(message, {"provider": provider, **(details or {})})
        self.provider = provider


class TransportError(RestClientError):
    """The request never produced an HTTP response (connect error, timeout, ...)."""

    code = "TRANSPORT_ERROR"


class HTTPStatusError(RestClientError):
    """The backend answered with a status outside [200, 300)."""

    code = "HTTP_STATUS_ERROR"

    def __init__(self, status_code: int, body: str):
        super().__init__(
            f"unexpected response code '{status_code}': {body}",
            {"status_code": status_code},
        )
        self.status_code = status_code
        self.body = body


class ResponseParseError(RestClientError):
    """A body that had to be a JSON object was not, or lacked the expected key."""

    code = "RESPONSE_PARSE_ERROR"


class PollTimeoutError(RestClientError):
    """The search value never showed up within the maximum polling duration."""

    code = "POLL_TIMEOUT_ERROR"

    def __init__(self, elapsed: float, last_body: str, expected: str):
        super().__init__(
            f"async search value '{expected}' not found after {elapsed:.1f}s",
            {"elapsed": elapsed},
        )
        self.elapsed = elapsed
        self.last_body = last_body
