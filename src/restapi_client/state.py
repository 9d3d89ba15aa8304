import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable

from .types import Token

# Cached tokens are refreshed this many seconds before they expire.
TOKEN_EXPIRY_MARGIN = 60.0


@dataclass(frozen=True)
class RequestState:
    uri: str
    method: str
    body: str = ""
    redirected: bool = False
    attempts: int = 0

    def next_attempt(self) -> "RequestState":
        return replace(self, attempts=self.attempts + 1)

    def follow(self, uri: str) -> "RequestState":
        # Redirects are always a bodyless GET, and only ever happen once.
        return replace(self, uri=uri, method="GET", body="", redirected=True)


class Deadline:
    """Time budget for one exchange with the backend, token fetches included.

    ``seconds`` of None or 0 means unbounded. Time spent inside ``paused()`` is
    not charged against the budget.
    """

    def __init__(self, seconds: float | None = None):
        self.seconds = seconds or None
        self._expires_at = None if self.seconds is None else self._now() + self.seconds

    def _now(self) -> float:
        return time.monotonic()

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - self._now()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    @contextmanager
    def paused(self):
        started = self._now()
        try:
            yield self
        finally:
            if self._expires_at is not None:
                self._expires_at += self._now() - started


class TokenCache:
    """Holds one token; readers get either the old or the new pair, never a mix.

    Two callers that both see a stale token will both refresh it. The second
    write wins, which only costs a duplicate fetch.
    """

    def __init__(self, margin: float = TOKEN_EXPIRY_MARGIN):
        self.margin = margin
        self._token: Token | None = None
        self._lock = threading.Lock()

    def _now(self) -> float:
        return time.time()

    def peek(self) -> Token | None:
        with self._lock:
            return self._token

    def get(self) -> Token | None:
        """Return the cached token if it is still outside the refresh margin."""
        token = self.peek()
        if token is not None and token.is_valid(self._now(), self.margin):
            return token
        return None

    def set(self, token: Token) -> None:
        with self._lock:
            self._token = token

    def get_or_fetch(self, fetch: Callable[[], Token]) -> tuple[Token, bool]:
        """Return ``(token, fetched)``; fetch runs outside the lock."""
        token = self.get()
        if token is not None:
            return token, False
        token = fetch()
        self.set(token)
        return token, True
