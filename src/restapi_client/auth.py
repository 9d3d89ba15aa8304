import base64
import logging

import httpx

from .errors import ConfigError
from .state import Deadline, TokenCache
from .tokens import (
    AzureFederatedProvider,
    GCPServiceAccountProvider,
    OAuth2ClientCredentialsProvider,
    StaticTokenProvider,
    TokenProvider,
)
from .types import ClientConfig

logger = logging.getLogger("restapi_client.auth")


class AuthStrategy(httpx.Auth):
    """Produces the Authorization header for one outgoing request.

    The executor calls ``headers()`` directly so token fetches happen at a fixed
    point of the request sequence. Strategies are also ``httpx.Auth`` objects, so
    they plug into any httpx client as ``auth=``.
    """

    kind = "none"

    def authorization(self, deadline: Deadline | None = None) -> str | None:
        return None

    def headers(self, deadline: Deadline | None = None) -> dict[str, str]:
        value = self.authorization(deadline)
        return {"Authorization": value} if value else {}

    def auth_flow(self, request):
        request.headers.update(self.headers())
        yield request

    def close(self) -> None:
        pass


class NoAuth(AuthStrategy):
    pass


class BasicAuth(AuthStrategy):
    kind = "basic"

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def authorization(self, deadline: Deadline | None = None) -> str:
        userpass = f"{self.username}:{self.password}".encode()
        return "Basic " + base64.b64encode(userpass).decode("ascii")


class BearerAuth(AuthStrategy):
    """Bearer header around whatever token the provider hands out."""

    kind = "bearer"

    def __init__(self, provider: TokenProvider):
        self.provider = provider

    def authorization(self, deadline: Deadline | None = None) -> str:
        return f"Bearer {self.provider.token(deadline).access_token}"

    def close(self) -> None:
        self.provider.close()


class StaticBearerAuth(BearerAuth):
    kind = "static_bearer"

    def __init__(self, bearer: str):
        super().__init__(StaticTokenProvider(bearer))


class OAuth2Auth(BearerAuth):
    # Caching is the provider's business.
    kind = "oauth2"


class GCPAuth(BearerAuth):
    kind = "gcp"

    def __init__(self, provider: GCPServiceAccountProvider, cache: TokenCache):
        super().__init__(provider)
        self.cache = cache

    def authorization(self, deadline: Deadline | None = None) -> str:
        stale = self.cache.peek() is not None
        token, fetched = self.cache.get_or_fetch(lambda: self.provider.token(deadline))
        if not fetched:
            logger.debug("reusing GCP bearer token")
        elif stale:
            logger.debug("GCP bearer token expired; fetched a new one")
        else:
            logger.debug("no GCP bearer token in memory; fetched one")
        return f"Bearer {token.access_token}"


class AzureAuth(BearerAuth):
    # Uncached: every request performs the federated exchange.
    kind = "azure"


def select_auth(
    config: ClientConfig,
    cache: TokenCache,
    client: httpx.Client | None = None,
    timeout: float | None = None,
) -> AuthStrategy:
    """Pick the single auth strategy a config describes.

    Precedence, highest first: Azure, GCP, OAuth2 client credentials, static
    bearer, basic. Basic auth is only a fallback when no token source is set.
    """
    token_configs = [c for c in (config.oauth, config.gcp_oauth, config.azure_oauth) if c]
    if len(token_configs) > 1:
        raise ConfigError(
            "only one of oauth, gcp_oauth and azure_oauth may be set",
            {"configured": [type(c).__name__ for c in token_configs]},
        )

    if config.azure_oauth is not None:
        return AzureAuth(AzureFederatedProvider(config.azure_oauth, client=client, timeout=timeout))
    if config.gcp_oauth is not None:
        provider = GCPServiceAccountProvider(config.gcp_oauth, client=client, timeout=timeout)
        return GCPAuth(provider, cache)
    if config.oauth is not None:
        oc = config.oauth
        if not (oc.client_id and oc.client_secret and oc.token_url):
            raise ConfigError("oauth requires client_id, client_secret and token_url")
        return OAuth2Auth(OAuth2ClientCredentialsProvider(oc, client=client, timeout=timeout))
    if config.bearer:
        return StaticBearerAuth(config.bearer)
    if config.username and config.password:
        return BasicAuth(config.username, config.password)
    return NoAuth()
