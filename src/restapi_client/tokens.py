"""Token acquisition for the supported identity providers.

Every provider exposes ``token() -> Token`` and raises ``TokenError`` for any
failure along the way (network, non-2xx, malformed payload, bad key material).
Providers make their calls through a plain ``httpx.Client`` that can be
injected, which is how the tests fake the identity providers.
"""

import json
import logging
import os
import re
import threading
import time
from typing import Any

import httpx
import jwt

from .errors import ConfigError, TokenError
from .state import Deadline
from .types import (
    AzureOauthConfig,
    GCPOauthConfig,
    GCPOpenIDConfig,
    OAuth2Config,
    Token,
)

GOOGLE_SCOPE_PREFIX = "https://www.googleapis.com/auth/"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_IAM_CREDENTIALS_URI = "https://iamcredentials.googleapis.com/v1"
CLOUD_PLATFORM_SCOPE = GOOGLE_SCOPE_PREFIX + "cloud-platform"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
GCE_METADATA_HOST = "metadata.google.internal"

# Lifetime we ask for when signing Google assertions / self-signed JWTs.
GCP_TOKEN_LIFETIME = 3600
# OAuth2 client-credentials tokens are renewed this early.
OAUTH2_EXPIRY_DELTA = 10.0

_OPENID_SCOPES = re.compile(r"^(openid|profile|email)$")


def parse_scopes(scopes) -> str:
    """Prefix bare Google scope names and join them with spaces.

    ``openid``, ``profile``, ``email`` and anything already containing ``//``
    are kept as they are.
    """
    parsed = []
    for scope in scopes:
        if "//" in scope or _OPENID_SCOPES.match(scope):
            parsed.append(scope)
        else:
            parsed.append(GOOGLE_SCOPE_PREFIX + scope)
    return " ".join(parsed)


class TokenProvider:
    name = "token"

    def __init__(self, client: httpx.Client | None = None, timeout: float | None = None):
        self._client = client
        self._own_client = client is None
        self._timeout = timeout
        self._logger = logging.getLogger(f"restapi_client.tokens.{self.name}")

    def _now(self) -> float:
        return time.time()

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def close(self) -> None:
        if self._own_client and self._client is not None:
            self._client.close()
            self._client = None

    def token(self, deadline: Deadline | None = None) -> Token:
        raise NotImplementedError

    def _fail(self, message: str, **details) -> TokenError:
        return TokenError(f"{self.name}: {message}", self.name, details)

    def _request(
        self, method: str, url: str, deadline: Deadline | None = None, **kwargs
    ) -> dict[str, Any]:
        if deadline is not None and deadline.bounded:
            remaining = deadline.remaining()
            if remaining <= 0:
                raise self._fail(
                    f"client timeout of {deadline.seconds:g}s spent before calling {url}"
                )
            kwargs["timeout"] = remaining
        try:
            resp = self._http().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise self._fail(f"request to {url} failed: {e}") from e
        if not resp.is_success:
            raise self._fail(
                f"{url} returned {resp.status_code}: {resp.text}", status_code=resp.status_code
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise self._fail(f"{url} returned a non-JSON body") from e
        if not isinstance(payload, dict):
            raise self._fail(f"{url} returned a JSON {type(payload).__name__}, expected an object")
        return payload

    def _require(self, payload: dict[str, Any], key: str) -> str:
        value = payload.get(key)
        if not isinstance(value, str) or not value:
            raise self._fail(f"response is missing '{key}'")
        return value

    def _expiry_from(self, payload: dict[str, Any], now: float) -> float | None:
        raw = payload.get("expires_in")
        if raw in (None, "", 0):
            return None
        try:
            return now + float(raw)
        except (TypeError, ValueError) as e:
            raise self._fail(f"invalid expires_in {raw!r}") from e


class StaticTokenProvider(TokenProvider):
    """A bearer token taken verbatim from configuration."""

    name = "static"

    def __init__(self, access_token: str):
        super().__init__()
        self._token = Token(access_token)

    def token(self, deadline: Deadline | None = None) -> Token:
        return self._token


class OAuth2ClientCredentialsProvider(TokenProvider):
    """RFC 6749 client-credentials grant; keeps its own token until shortly before expiry."""

    name = "oauth2"

    def __init__(self, config: OAuth2Config, client: httpx.Client | None = None, timeout=None):
        super().__init__(client, timeout)
        if "scope" in config.endpoint_params:
            raise ConfigError("oauth endpoint_params must not set 'scope'; use scopes instead")
        self.config = config
        self._cached: Token | None = None
        self._lock = threading.Lock()

    def token(self, deadline: Deadline | None = None) -> Token:
        with self._lock:
            if self._cached is not None and self._cached.is_valid(self._now(), OAUTH2_EXPIRY_DELTA):
                return self._cached
            self._cached = self._fetch(deadline)
            return self._cached

    def _fetch(self, deadline: Deadline | None) -> Token:
        # endpoint_params may replace grant_type.
        data = {"grant_type": "client_credentials", **self.config.endpoint_params}
        if self.config.scopes:
            data["scope"] = " ".join(self.config.scopes)
        now = self._now()
        payload = self._request(
            "POST",
            self.config.token_url,
            deadline,
            data=data,
            auth=(self.config.client_id, self.config.client_secret),
        )
        self._logger.debug(f"fetched client-credentials token from {self.config.token_url}")
        return Token(
            access_token=self._require(payload, "access_token"),
            token_type=payload.get("token_type") or "Bearer",
            expiry=self._expiry_from(payload, now),
        )


class GCPServiceAccountProvider(TokenProvider):
    """Google service-account tokens, either exchanged (``oauth``) or self-signed (``jwt``)."""

    name = "gcp"

    def __init__(self, config: GCPOauthConfig, client: httpx.Client | None = None, timeout=None):
        super().__init__(client, timeout)
        self.config = config

    def _key(self) -> dict[str, Any]:
        try:
            key = json.loads(self.config.service_account_key)
        except ValueError as e:
            raise self._fail("service account key is not valid JSON") from e
        if not isinstance(key, dict):
            raise self._fail("service account key must be a JSON object")
        for field in ("client_email", "private_key"):
            if not key.get(field):
                raise self._fail(f"service account key is missing '{field}'")
        return key

    def _sign(self, key: dict[str, Any], claims: dict[str, Any]) -> str:
        headers = {"kid": key["private_key_id"]} if key.get("private_key_id") else None
        try:
            return jwt.encode(claims, key["private_key"], algorithm="RS256", headers=headers)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            raise self._fail(f"could not sign with the service account key: {e}") from e

    def token(self, deadline: Deadline | None = None) -> Token:
        key = self._key()
        scope = parse_scopes(self.config.scopes)
        if self.config.auth_type == "jwt":
            return self._self_signed(key, scope)
        if self.config.auth_type == "oauth":
            return self._exchange(key, scope, deadline)
        raise self._fail(f"unknown auth type '{self.config.auth_type}'")

    def _self_signed(self, key: dict[str, Any], scope: str) -> Token:
        now = int(self._now())
        claims = {
            "iss": key["client_email"],
            "sub": key["client_email"],
            "iat": now,
            "exp": now + GCP_TOKEN_LIFETIME,
        }
        if self.config.audience:
            claims["aud"] = self.config.audience
        else:
            claims["scope"] = scope
        return Token(self._sign(key, claims), expiry=float(claims["exp"]))

    def _exchange(self, key: dict[str, Any], scope: str, deadline: Deadline | None) -> Token:
        token_uri = key.get("token_uri") or GOOGLE_TOKEN_URI
        now = int(self._now())
        claims = {
            "iss": key["client_email"],
            "scope": scope,
            "aud": token_uri,
            "iat": now,
            "exp": now + GCP_TOKEN_LIFETIME,
        }
        if self.config.audience:
            claims["target_audience"] = self.config.audience
        payload = self._request(
            "POST",
            token_uri,
            deadline,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self._sign(key, claims)},
        )
        # Google answers with id_token instead of access_token when target_audience is set.
        access = payload.get("access_token") or payload.get("id_token")
        if not isinstance(access, str) or not access:
            raise self._fail("response is missing 'access_token'")
        return Token(
            access_token=access,
            token_type=payload.get("token_type") or "Bearer",
            expiry=self._expiry_from(payload, float(now)),
        )


def well_known_credentials_path() -> str:
    """Where ``gcloud auth application-default login`` writes user credentials."""
    config_dir = os.environ.get("CLOUDSDK_CONFIG") or os.path.join(
        os.path.expanduser("~"), ".config", "gcloud"
    )
    return os.path.join(config_dir, "application_default_credentials.json")


class GCPOpenIDProvider(TokenProvider):
    """OpenID identity token for an impersonated service account. Never cached.

    The impersonating identity comes from, in order: the configured source key,
    the file named by GOOGLE_APPLICATION_CREDENTIALS, the gcloud well-known
    credentials file, and finally the GCE/GKE metadata server. Credential files
    may hold a ``service_account`` key or ``authorized_user`` refresh token.
    """

    name = "gcp_openid"

    def __init__(self, config: GCPOpenIDConfig, client: httpx.Client | None = None, timeout=None):
        super().__init__(client, timeout)
        self.config = config

    def _source_credentials(self) -> str | None:
        if self.config.source_service_account_key:
            return self.config.source_service_account_key
        path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        if not path:
            path = well_known_credentials_path()
            if not os.path.isfile(path):
                return None
        try:
            with open(path) as f:
                return f.read()
        except OSError as e:
            raise self._fail(f"cannot read {path}: {e}") from e

    def _source_token(self, deadline: Deadline | None) -> Token:
        raw = self._source_credentials()
        if raw is None:
            return self._metadata_token(deadline)
        try:
            info = json.loads(raw)
        except ValueError as e:
            raise self._fail("source credentials are not valid JSON") from e
        if not isinstance(info, dict):
            raise self._fail("source credentials must be a JSON object")

        kind = info.get("type", "service_account")
        if kind == "authorized_user":
            return self._refresh_user_token(info, deadline)
        if kind == "service_account":
            source = GCPServiceAccountProvider(
                GCPOauthConfig(service_account_key=raw, scopes=(CLOUD_PLATFORM_SCOPE,)),
                client=self._http(),
            )
            return source.token(deadline)
        raise self._fail(f"unsupported source credential type '{kind}'")

    def _refresh_user_token(self, info: dict[str, Any], deadline: Deadline | None) -> Token:
        for field in ("client_id", "client_secret", "refresh_token"):
            if not info.get(field):
                raise self._fail(f"authorized_user credentials are missing '{field}'")
        token_uri = info.get("token_uri") or GOOGLE_TOKEN_URI
        now = self._now()
        payload = self._request(
            "POST",
            token_uri,
            deadline,
            data={
                "grant_type": "refresh_token",
                "client_id": info["client_id"],
                "client_secret": info["client_secret"],
                "refresh_token": info["refresh_token"],
            },
        )
        self._logger.debug("refreshed authorized_user source token")
        return Token(self._require(payload, "access_token"), expiry=self._expiry_from(payload, now))

    def _metadata_token(self, deadline: Deadline | None) -> Token:
        host = os.environ.get("GCE_METADATA_HOST") or GCE_METADATA_HOST
        url = f"http://{host}/computeMetadata/v1/instance/service-accounts/default/token"
        now = self._now()
        payload = self._request("GET", url, deadline, headers={"Metadata-Flavor": "Google"})
        self._logger.debug(f"fetched source token from the metadata server at {host}")
        return Token(self._require(payload, "access_token"), expiry=self._expiry_from(payload, now))

    def token(self, deadline: Deadline | None = None) -> Token:
        source = self._source_token(deadline)
        url = (
            f"{GOOGLE_IAM_CREDENTIALS_URI}/projects/-/serviceAccounts/"
            f"{self.config.target_principal}:generateIdToken"
        )
        payload = self._request(
            "POST",
            url,
            deadline,
            headers={"Authorization": f"Bearer {source.access_token}"},
            json={
                "audience": self.config.audience,
                "includeEmail": self.config.include_email,
                "delegates": [f"projects/-/serviceAccounts/{d}" for d in self.config.delegates],
            },
        )
        id_token = self._require(payload, "token")
        try:
            claims = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise self._fail(f"identity token is not a JWT: {e}") from e
        exp = claims.get("exp")
        return Token(id_token, expiry=float(exp) if exp is not None else None)


class AzureFederatedProvider(TokenProvider):
    """Azure AD v2 client-credentials grant using a GCP identity token as client assertion.

    Tokens are fetched on every call and never cached.
    """

    name = "azure"

    def __init__(
        self,
        config: AzureOauthConfig,
        openid: GCPOpenIDProvider | None = None,
        client: httpx.Client | None = None,
        timeout=None,
    ):
        super().__init__(client, timeout)
        self.config = config
        self.openid = openid or GCPOpenIDProvider(config.gcp_openid, client=client, timeout=timeout)

    @property
    def token_url(self) -> str:
        return f"{self.config.authority_host.rstrip('/')}/{self.config.tenant_id}/oauth2/v2.0/token"

    def close(self) -> None:
        self.openid.close()
        super().close()

    def token(self, deadline: Deadline | None = None) -> Token:
        assertion = self.openid.token(deadline)
        now = self._now()
        payload = self._request(
            "POST",
            self.token_url,
            deadline,
            data={
                "scope": self.config.scope,
                "client_id": self.config.client_id,
                "client_assertion": assertion.access_token,
                "client_assertion_type": self.config.client_assertion_type,
                "grant_type": self.config.grant_type,
            },
        )
        return Token(
            access_token=self._require(payload, "access_token"),
            token_type=payload.get("token_type") or "Bearer",
            expiry=self._expiry_from(payload, now),
        )
