from dataclasses import dataclass, field
from typing import Literal

AZURE_CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


@dataclass(frozen=True)
class AsyncSettings:
    # Seconds between polls while the search value has not shown up yet.
    poll_interval: float = 1.0
    # Upper bound on total polling time in seconds. 0 means poll forever.
    maximum_polling_duration: float = 0.0
    # Key (or a/b/c path) holding a URI to GET once before polling.
    redirect_uri_key: str = ""
    search_key: str = ""
    search_value: str = ""


@dataclass(frozen=True)
class OAuth2Config:
    client_id: str
    client_secret: str
    token_url: str
    scopes: tuple[str, ...] = ()
    endpoint_params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GCPOauthConfig:
    service_account_key: str
    scopes: tuple[str, ...] = ()
    audience: str = ""
    auth_type: Literal["oauth", "jwt"] = "oauth"


@dataclass(frozen=True)
class GCPOpenIDConfig:
    target_principal: str
    audience: str
    include_email: bool = False
    delegates: tuple[str, ...] = ()
    # JSON key of the identity doing the impersonation. Empty means look it up
    # the way Application Default Credentials do.
    source_service_account_key: str = ""


@dataclass(frozen=True)
class AzureOauthConfig:
    gcp_openid: GCPOpenIDConfig
    scope: str
    tenant_id: str
    client_id: str
    client_assertion_type: str = AZURE_CLIENT_ASSERTION_TYPE
    grant_type: str = "client_credentials"
    authority_host: str = "https://login.microsoftonline.com"


@dataclass(frozen=True)
class Token:
    access_token: str
    token_type: str = "Bearer"
    # Epoch seconds. None means the token does not expire.
    expiry: float | None = None

    def is_valid(self, now: float, margin: float = 0.0) -> bool:
        return self.expiry is None or now < self.expiry - margin


@dataclass(frozen=True)
class ClientConfig:
    uri: str
    insecure: bool = False
    username: str = ""
    password: str = ""
    bearer: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    # Seconds; 0 disables the timeout.
    timeout: float = 0
    id_attribute: str = ""
    create_method: str = ""
    read_method: str = ""
    update_method: str = ""
    update_data: str = ""
    destroy_method: str = ""
    destroy_data: str = ""
    copy_keys: tuple[str, ...] = ()
    write_returns_object: bool = False
    create_returns_object: bool = False
    xssi_prefix: str = ""
    use_cookies: bool = False
    # Requests per second. None (or <= 0) disables client-side throttling.
    rate_limit: float | None = None
    oauth: OAuth2Config | None = None
    gcp_oauth: GCPOauthConfig | None = None
    azure_oauth: AzureOauthConfig | None = None
    async_settings: AsyncSettings | None = None
    cert_file: str = ""
    key_file: str = ""
    cert_string: str = ""
    key_string: str = ""
    debug: bool = False
