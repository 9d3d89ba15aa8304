from .auth import (
    AuthStrategy,
    AzureAuth,
    BasicAuth,
    GCPAuth,
    NoAuth,
    OAuth2Auth,
    StaticBearerAuth,
    select_auth,
)
from .client import APIClient, AsyncAPIClient
from .env import load_config_from_env
from .errors import (
    ConfigError,
    HTTPStatusError,
    PollTimeoutError,
    ResponseParseError,
    RestClientError,
    TLSError,
    TokenError,
    TransportError,
)
from .policies import (
    AsyncCompletionPolicy,
    Failed,
    Final,
    FollowRedirect,
    RetryAfterDelay,
    get_string_at_key,
)
from .state import TokenCache
from .tokens import (
    AzureFederatedProvider,
    GCPOpenIDProvider,
    GCPServiceAccountProvider,
    OAuth2ClientCredentialsProvider,
    StaticTokenProvider,
    parse_scopes,
)
from .transport import AsyncRateLimiter, RateLimiter, TransportBuilder
from .types import (
    AsyncSettings,
    AzureOauthConfig,
    ClientConfig,
    GCPOauthConfig,
    GCPOpenIDConfig,
    OAuth2Config,
    Token,
)

__all__ = [
    "ClientConfig",
    "AsyncSettings",
    "OAuth2Config",
    "GCPOauthConfig",
    "GCPOpenIDConfig",
    "AzureOauthConfig",
    "Token",
    "APIClient",
    "AsyncAPIClient",
    "load_config_from_env",
    "AsyncCompletionPolicy",
    "Final",
    "FollowRedirect",
    "RetryAfterDelay",
    "Failed",
    "get_string_at_key",
    "AuthStrategy",
    "NoAuth",
    "BasicAuth",
    "StaticBearerAuth",
    "OAuth2Auth",
    "GCPAuth",
    "AzureAuth",
    "select_auth",
    "StaticTokenProvider",
    "OAuth2ClientCredentialsProvider",
    "GCPServiceAccountProvider",
    "GCPOpenIDProvider",
    "AzureFederatedProvider",
    "parse_scopes",
    "TokenCache",
    "TransportBuilder",
    "RateLimiter",
    "AsyncRateLimiter",
    "RestClientError",
    "ConfigError",
    "TLSError",
    "TokenError",
    "TransportError",
    "HTTPStatusError",
    "ResponseParseError",
    "PollTimeoutError",
]
