import asyncio
import logging
import math
import os
import ssl
import tempfile
import threading
import time
from http.cookiejar import CookieJar, DefaultCookiePolicy

import certifi
import httpx

from .errors import TLSError
from .types import ClientConfig

logger = logging.getLogger("restapi_client.transport")

# Seconds between two "waiting for the rate limiter" log lines.
WAIT_NOTICE_INTERVAL = 5.0


# ---------- Token bucket (shared math; waiting handled by subclasses) ----------


class _TokenBucket:
    def __init__(self, rate: float):
        """Bucket refilling at ``rate`` tokens/second, holding ``max(round(rate), 1)``.

        The capacity floor of 1 keeps sub-1 rates from building a bucket that
        can never admit a request.
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = max(int(math.floor(rate + 0.5)), 1)
        self._tokens = float(self.capacity)
        self._updated = self._now()
        self._notice_at = 0.0

    def _now(self) -> float:
        return time.monotonic()

    def _reserve(self) -> float:
        """Take a token if one is there; otherwise return how long until one is."""
        now = self._now()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now
        if self._tokens >= 1:
            self._tokens -= 1
            return 0.0
        return (1 - self._tokens) / self.rate

    def _notice(self, delay: float) -> None:
        now = self._now()
        if self._notice_at <= now:
            logger.info(f"rate limit of {self.rate:g}/s reached; waiting ~{delay:.2f}s")
            self._notice_at = now + WAIT_NOTICE_INTERVAL


class RateLimiter(_TokenBucket):
    def __init__(self, rate: float):
        super().__init__(rate)
        self._lock = threading.Lock()

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def acquire(self) -> None:
        """Block until the bucket admits one request."""
        while True:
            with self._lock:
                delay = self._reserve()
            if delay <= 0:
                return
            self._notice(delay)
            self._sleep(delay)


class AsyncRateLimiter(_TokenBucket):
    def __init__(self, rate: float):
        super().__init__(rate)
        self._lock = asyncio.Lock()

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                delay = self._reserve()
            if delay <= 0:
                return
            self._notice(delay)
            await self._sleep(delay)


# ---------- TLS / cookies / clients ----------


def _load_pem_pair(ctx: ssl.SSLContext, cert_pem: str, key_pem: str) -> None:
    # ssl only loads certificate chains from files.
    with tempfile.TemporaryDirectory() as tmp:
        cert_path = os.path.join(tmp, "client.crt")
        key_path = os.path.join(tmp, "client.key")
        with open(cert_path, "w") as f:
            f.write(cert_pem)
        with open(key_path, "w") as f:
            f.write(key_pem)
        ctx.load_cert_chain(cert_path, key_path)


def build_ssl_context(config: ClientConfig) -> ssl.SSLContext:
    ctx = ssl.create_default_context(cafile=certifi.where())
    if config.insecure:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    # Inline PEM first, file pair second: when both load, the files win.
    if config.cert_string and config.key_string:
        try:
            _load_pem_pair(ctx, config.cert_string, config.key_string)
        except (ssl.SSLError, OSError) as e:
            raise TLSError(f"invalid client certificate or key PEM: {e}") from e
    if config.cert_file and config.key_file:
        try:
            ctx.load_cert_chain(config.cert_file, config.key_file)
        except (ssl.SSLError, OSError) as e:
            raise TLSError(
                f"cannot load client certificate {config.cert_file} / {config.key_file}: {e}",
                {"cert_file": config.cert_file, "key_file": config.key_file},
            ) from e
    return ctx


def build_cookie_jar(use_cookies: bool) -> CookieJar:
    if use_cookies:
        return CookieJar()
    # An empty allow-list refuses every cookie both ways.
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


class TransportBuilder:
    """Builds the httpx client and limiter for one executor.

    The TLS context is built eagerly so certificate problems fail construction
    rather than the first request. Proxies always come from the environment.
    """

    def __init__(self, config: ClientConfig):
        self.config = config
        self.ssl_context = build_ssl_context(config)

    @property
    def timeout(self) -> float | None:
        return self.config.timeout or None

    def _client_kwargs(self) -> dict:
        return {
            "verify": self.ssl_context,
            "timeout": self.timeout,
            "cookies": build_cookie_jar(self.config.use_cookies),
            "follow_redirects": True,
            "trust_env": True,
        }

    def client(self) -> httpx.Client:
        return httpx.Client(**self._client_kwargs())

    def async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(**self._client_kwargs())

    def limiter(self) -> RateLimiter | None:
        rate = self.config.rate_limit
        return RateLimiter(rate) if rate and rate > 0 else None

    def async_limiter(self) -> AsyncRateLimiter | None:
        rate = self.config.rate_limit
        return AsyncRateLimiter(rate) if rate and rate > 0 else None
