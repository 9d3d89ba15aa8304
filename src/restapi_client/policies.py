"""Decide, after every response, whether a call is done.

The executor loop only ever acts on one of four decisions:

    Final(body)           return body to the caller
    FollowRedirect(uri)   GET uri right away, once per call
    RetryAfterDelay(...)  sleep the poll interval and send again
    Failed(error)         raise error

What is retried and what is not:

    failure kind              retried?   bounded by
    ------------------------  ---------  ---------------------------------
    TokenError                no         -
    TransportError            no         -
    HTTPStatusError           no         -
    ResponseParseError        no         -
    redirect key present      once       one follow per call, no delay
    search value mismatch     yes        poll interval + maximum duration
    PollTimeoutError          no         raised once the duration is spent
"""

import json
from dataclasses import dataclass
from typing import Any, Union

from .errors import HTTPStatusError, ResponseParseError, RestClientError
from .types import AsyncSettings


@dataclass(frozen=True)
class Final:
    body: str


@dataclass(frozen=True)
class FollowRedirect:
    uri: str


@dataclass(frozen=True)
class RetryAfterDelay:
    found: str


@dataclass(frozen=True)
class Failed:
    error: RestClientError


Decision = Union[Final, FollowRedirect, RetryAfterDelay, Failed]


def parse_object(body: str) -> dict[str, Any]:
    try:
        result = json.loads(body)
    except ValueError as e:
        raise ResponseParseError(f"response body is not valid JSON: {e}") from e
    if not isinstance(result, dict):
        raise ResponseParseError(
            f"response body is a JSON {type(result).__name__}, expected an object"
        )
    return result


def get_string_at_key(data: dict[str, Any], path: str) -> str:
    """Walk a slash-separated path (``a/b/0/c``) and return the string found there.

    Path segments index into objects by key and into arrays by position.
    """
    current: Any = data
    walked: list[str] = []
    for part in (p for p in path.split("/") if p):
        walked.append(part)
        if isinstance(current, dict):
            if part not in current:
                raise ResponseParseError(f"key '{'/'.join(walked)}' not found in response")
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError) as e:
                raise ResponseParseError(
                    f"'{'/'.join(walked)}' is not a valid index into a list of {len(current)}"
                ) from e
        else:
            raise ResponseParseError(f"cannot descend into '{'/'.join(walked)}': not an object")
    if not isinstance(current, str):
        raise ResponseParseError(
            f"value at '{path}' is a JSON {type(current).__name__}, expected a string"
        )
    return current


class AsyncCompletionPolicy:
    """Pure decision logic; holds no per-call state of its own."""

    def __init__(self, settings: AsyncSettings | None = None):
        self.settings = settings

    @property
    def redirects(self) -> bool:
        return bool(self.settings and self.settings.redirect_uri_key)

    @property
    def searches(self) -> bool:
        return bool(self.settings and self.settings.search_key and self.settings.search_value)

    def decide(self, status_code: int, body: str, redirected: bool) -> Decision:
        if status_code < 200 or status_code >= 300:  # noqa: PLR2004, http status code can be constant
            return Failed(HTTPStatusError(status_code, body))
        try:
            if self.redirects and not redirected:
                uri = get_string_at_key(parse_object(body), self.settings.redirect_uri_key)
                return FollowRedirect(uri)
            if self.searches:
                found = get_string_at_key(parse_object(body), self.settings.search_key)
                if found != self.settings.search_value:
                    return RetryAfterDelay(found)
        except ResponseParseError as e:
            return Failed(e)
        return Final(body)
