import asyncio
import json
import logging
import time
from dataclasses import replace
from typing import Union

import httpx

from .auth import select_auth
from .env import load_config_from_env
from .errors import ConfigError, PollTimeoutError, TransportError
from .policies import AsyncCompletionPolicy, Decision, Failed, Final, FollowRedirect
from .state import Deadline, RequestState, TokenCache
from .transport import TransportBuilder
from .types import ClientConfig

DEFAULT_POLL_INTERVAL = 1.0

_REDACTED = "<redacted>"

# ---------- Base executor (shared logic; I/O handled by subclasses) ----------


class _Executor:
    def __init__(self, config: ClientConfig, log_level: Union[int, None] = None):
        """Validate ``config``, apply defaults and build transport and auth.

        Args:
            config (ClientConfig): client configuration
            log_level (int | None): level for the ``restapi_client`` logger;
                ``config.debug`` forces DEBUG

        Raises:
            ConfigError: if the uri is empty or the auth configs conflict
            TLSError: if the client certificate cannot be loaded
        """
        if not config.uri:
            raise ConfigError("uri must be set to construct an API client")
        self.config = replace(
            config,
            # We append root-prefixed paths to this ourselves.
            uri=config.uri.rstrip("/"),
            id_attribute=config.id_attribute or "id",
            create_method=config.create_method or "POST",
            read_method=config.read_method or "GET",
            update_method=config.update_method or "PUT",
            destroy_method=config.destroy_method or "DELETE",
        )
        self._logger = logging.getLogger("restapi_client")
        # Level to put back on close; None when this client never touched it.
        self._saved_level: Union[int, None] = None
        level = logging.DEBUG if self.config.debug else log_level
        if level is not None:
            self._saved_level = self._logger.level
            self._logger.setLevel(level)

        self._builder = TransportBuilder(self.config)
        self._token_cache = TokenCache()
        self._auth = select_auth(self.config, self._token_cache, timeout=self._builder.timeout)
        self._policy = AsyncCompletionPolicy(self.config.async_settings)
        if self.config.rate_limit:
            self._logger.info(f"rate limit: {self.config.rate_limit:g}/s")
        self._logger.debug(f"constructed client:\n{self.describe()}")

    @property
    def uri(self) -> str:
        return self.config.uri

    @property
    def debug(self) -> bool:
        return self.config.debug

    def _now(self) -> float:
        return time.monotonic()

    def describe(self) -> str:
        c = self.config
        lines = [
            f"uri: {c.uri}",
            f"insecure: {c.insecure}",
            f"username: {c.username}",
            f"password: {_REDACTED if c.password else ''}",
            f"bearer: {_REDACTED if c.bearer else ''}",
            f"auth: {self._auth.kind}",
            f"id_attribute: {c.id_attribute}",
            f"write_returns_object: {c.write_returns_object}",
            f"create_returns_object: {c.create_returns_object}",
            "headers:",
        ]
        lines += [f"  {k}: {v}" for k, v in c.headers.items()]
        if c.copy_keys:
            lines.append("copy_keys: " + ", ".join(c.copy_keys))
        return "\n".join(lines)

    # --- request building ---
    def _headers(self, state: RequestState) -> httpx.Headers:
        headers = httpx.Headers()
        if state.body:
            # Default only; configured headers may replace it.
            headers["Content-Type"] = "application/json"
        for name, value in self.config.headers.items():
            headers[name] = value
        return headers

    def _build_request(
        self, client, state: RequestState, auth_headers: dict[str, str]
    ) -> httpx.Request:
        try:
            request = client.build_request(
                state.method,
                state.uri,
                content=state.body.encode() if state.body else None,
                headers=self._headers(state),
            )
        except httpx.InvalidURL as e:
            raise TransportError(f"invalid request uri '{state.uri}': {e}") from e
        request.headers.update(auth_headers)
        return request

    def _strip_prefix(self, body: str) -> str:
        prefix = self.config.xssi_prefix
        return body[len(prefix):] if prefix and body.startswith(prefix) else body

    def _transport_error(self, state: RequestState, e: Exception) -> TransportError:
        return TransportError(
            f"{state.method} {state.uri} failed: {e!r}",
            {"method": state.method, "uri": state.uri, "attempt": state.attempts},
        )

    # --- timeout ---
    def _deadline(self) -> Deadline:
        return Deadline(self._builder.timeout)

    def _timeout_error(self, state: RequestState, deadline: Deadline) -> TransportError:
        return TransportError(
            f"{state.method} {state.uri} exceeded the client timeout of {deadline.seconds:g}s",
            {"method": state.method, "uri": state.uri, "timeout": deadline.seconds},
        )

    def _arm(
        self, request: httpx.Request, state: RequestState, deadline: Deadline
    ) -> Union[float, None]:
        """Cap every httpx wait on ``request`` at what is left of ``deadline``."""
        remaining = deadline.remaining()
        if remaining is None:
            return None
        if remaining <= 0:
            raise self._timeout_error(state, deadline)
        request.extensions["timeout"] = httpx.Timeout(remaining).as_dict()
        return remaining

    def _decode(self, response: httpx.Response, content: bytes) -> str:
        return self._strip_prefix(content.decode(response.encoding or "utf-8", errors="replace"))

    # --- payloads ---
    def _update_payload(self, data: str) -> str:
        """Overlay the top-level keys of ``config.update_data`` on ``data``."""
        if not self.config.update_data:
            return data
        try:
            extra = json.loads(self.config.update_data)
            base = json.loads(data) if data else {}
        except ValueError as e:
            raise ConfigError(f"update_data and the update payload must be JSON: {e}") from e
        if not isinstance(extra, dict) or not isinstance(base, dict):
            raise ConfigError("update_data and the update payload must be JSON objects")
        return json.dumps({**base, **extra})

    def _restore_log_level(self) -> None:
        if self._saved_level is not None:
            self._logger.setLevel(self._saved_level)
            self._saved_level = None

    # --- logging ---
    def _log_request(self, request: httpx.Request, state: RequestState) -> None:
        if not self.debug:
            return
        headers = "\n".join(
            f"{name}, {_REDACTED if name.lower() == 'authorization' else value}"
            for name, value in request.headers.items()
        )
        self._logger.debug(
            f"\n--- [REQUEST TO {request.url.host}] ---\n{request.method} {request.url}\n\n"
            f"{headers}\n\n{state.body or '<none>'}\n\n--- [END REQUEST] ---"
        )

    def _log_response(self, response: httpx.Response, body: str) -> None:
        if not self.debug:
            return
        headers = "\n".join(f"{name}, {value}" for name, value in response.headers.items())
        self._logger.debug(
            f"\n--- [RESPONSE FROM {response.request.url.host}] ---\n"
            f"{response.status_code} {response.reason_phrase}\n\n{headers}\n\n{body}\n\n"
            f"--- [END RESPONSE] ---"
        )

    # --- decisions ---
    def _poll_delay(self, started: float) -> Union[float, None]:
        """Delay before the next poll, or None once the polling budget is spent."""
        settings = self.config.async_settings
        interval = DEFAULT_POLL_INTERVAL
        limit = 0.0
        if settings is not None:
            if settings.poll_interval > 0:
                interval = settings.poll_interval
            limit = settings.maximum_polling_duration
        if limit <= 0:
            return interval
        remaining = limit - (self._now() - started)
        if remaining <= 0:
            return None
        return min(interval, remaining)

    def _advance(
        self, state: RequestState, decision: Decision, body: str, started: float
    ) -> tuple[RequestState, float]:
        """Turn a non-final decision into the next state plus the delay before sending it."""
        if isinstance(decision, Failed):
            raise decision.error
        if isinstance(decision, FollowRedirect):
            uri = str(httpx.URL(state.uri).join(decision.uri))
            self._logger.debug(f"has follow uri, following to: {uri}")
            return state.follow(uri), 0.0
        settings = self.config.async_settings
        self._logger.debug(
            f"search value does not match desired value {decision.found}!={settings.search_value}"
        )
        delay = self._poll_delay(started)
        if delay is None:
            raise PollTimeoutError(self._now() - started, body, settings.search_value)
        return state, delay


# ---------- Blocking client ----------


class APIClient(_Executor):
    """Blocking executor; one instance may be shared by many threads."""

    def __init__(self, config: ClientConfig, log_level: Union[int, None] = None):
        super().__init__(config, log_level)
        self._http = self._builder.client()
        self._limiter = self._builder.limiter()

    @classmethod
    def from_env(cls, env_path: Union[str, None] = None, prefix: str = "REST_API_", **kwargs):
        """Build a client from ``REST_API_*`` variables; kwargs override config fields."""
        log_level = kwargs.pop("log_level", None)
        return cls(load_config_from_env(env_path=env_path, prefix=prefix, **kwargs), log_level)

    def close(self) -> None:
        self._http.close()
        self._auth.close()
        self._restore_log_level()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def send_request(self, method: str, path: str, data: str = "") -> str:
        """Send one logical request and return the final response body.

        Follows a redirect key at most once and keeps polling while the search
        key does not hold the search value. Each attempt, token fetch included,
        is bounded by ``config.timeout``.
        """
        state = RequestState(uri=self.uri + path, method=method, body=data or "")
        self._logger.debug(
            f"method='{method}', path='{path}', full uri (derived)='{state.uri}', data='{data}'"
        )
        started = self._now()
        while True:
            state = state.next_attempt()
            status, body = self._attempt(state)
            decision = self._policy.decide(status, body, state.redirected)
            if isinstance(decision, Final):
                return decision.body
            state, delay = self._advance(state, decision, body, started)
            if delay > 0:
                self._sleep(delay)

    def _attempt(self, state: RequestState) -> tuple[int, str]:
        deadline = self._deadline()
        request = self._build_request(self._http, state, self._auth.headers(deadline))
        if self._limiter is not None:
            self._logger.debug("waiting for rate limit availability")
            # Admission waits are not charged to the client timeout.
            with deadline.paused():
                self._limiter.acquire()
        self._arm(request, state, deadline)
        self._log_request(request, state)
        try:
            response = self._http.send(request, stream=True)
            try:
                content = self._read(response, state, deadline)
            finally:
                response.close()
        except httpx.RequestError as e:
            raise self._transport_error(state, e) from e
        body = self._decode(response, content)
        self._log_response(response, body)
        return response.status_code, body

    def _read(self, response: httpx.Response, state: RequestState, deadline: Deadline) -> bytes:
        # httpx restarts its read timeout per chunk, so the deadline is checked here too.
        chunks = []
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            if deadline.expired():
                raise self._timeout_error(state, deadline)
        return b"".join(chunks)

    # sugar
    def create(self, path: str, data: str = "") -> str:
        return self.send_request(self.config.create_method, path, data)

    def read(self, path: str) -> str:
        return self.send_request(self.config.read_method, path)

    def update(self, path: str, data: str = "") -> str:
        return self.send_request(self.config.update_method, path, self._update_payload(data))

    def destroy(self, path: str) -> str:
        return self.send_request(self.config.destroy_method, path, self.config.destroy_data)


# ---------- asyncio client ----------


class AsyncAPIClient(_Executor):
    """asyncio executor. Token fetches are blocking and run in a worker thread."""

    def __init__(self, config: ClientConfig, log_level: Union[int, None] = None):
        super().__init__(config, log_level)
        self._http = self._builder.async_client()
        self._limiter = self._builder.async_limiter()

    @classmethod
    def from_env(cls, env_path: Union[str, None] = None, prefix: str = "REST_API_", **kwargs):
        log_level = kwargs.pop("log_level", None)
        return cls(load_config_from_env(env_path=env_path, prefix=prefix, **kwargs), log_level)

    async def close(self) -> None:
        await self._http.aclose()
        await asyncio.to_thread(self._auth.close)
        self._restore_log_level()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def send_request(self, method: str, path: str, data: str = "") -> str:
        state = RequestState(uri=self.uri + path, method=method, body=data or "")
        self._logger.debug(
            f"method='{method}', path='{path}', full uri (derived)='{state.uri}', data='{data}'"
        )
        started = self._now()
        while True:
            state = state.next_attempt()
            status, body = await self._attempt(state)
            decision = self._policy.decide(status, body, state.redirected)
            if isinstance(decision, Final):
                return decision.body
            state, delay = self._advance(state, decision, body, started)
            if delay > 0:
                await self._sleep(delay)

    async def _attempt(self, state: RequestState) -> tuple[int, str]:
        deadline = self._deadline()
        auth_headers = await asyncio.to_thread(self._auth.headers, deadline)
        request = self._build_request(self._http, state, auth_headers)
        if self._limiter is not None:
            self._logger.debug("waiting for rate limit availability")
            with deadline.paused():
                await self._limiter.acquire()
        remaining = self._arm(request, state, deadline)
        self._log_request(request, state)
        try:
            response, content = await asyncio.wait_for(self._exchange(request), remaining)
        except asyncio.TimeoutError as e:
            raise self._timeout_error(state, deadline) from e
        except httpx.RequestError as e:
            raise self._transport_error(state, e) from e
        body = self._decode(response, content)
        self._log_response(response, body)
        return response.status_code, body

    async def _exchange(self, request: httpx.Request) -> tuple[httpx.Response, bytes]:
        response = await self._http.send(request, stream=True)
        try:
            content = b"".join([chunk async for chunk in response.aiter_bytes()])
        finally:
            await response.aclose()
        return response, content

    async def create(self, path: str, data: str = "") -> str:
        return await self.send_request(self.config.create_method, path, data)

    async def read(self, path: str) -> str:
        return await self.send_request(self.config.read_method, path)

    async def update(self, path: str, data: str = "") -> str:
        return await self.send_request(
            self.config.update_method, path, self._update_payload(data)
        )

    async def destroy(self, path: str) -> str:
        return await self.send_request(self.config.destroy_method, path, self.config.destroy_data)
