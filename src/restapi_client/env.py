import os
from dataclasses import fields

from .errors import ConfigError
from .types import ClientConfig, OAuth2Config

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

# env suffix -> (ClientConfig field, parser)
_SIMPLE_FIELDS = {
    "URI": ("uri", "str"),
    "INSECURE": ("insecure", "bool"),
    "USERNAME": ("username", "str"),
    "PASSWORD": ("password", "str"),
    "BEARER": ("bearer", "str"),
    "TIMEOUT": ("timeout", "float"),
    "RATE_LIMIT": ("rate_limit", "float"),
    "XSSI_PREFIX": ("xssi_prefix", "str"),
    "USE_COOKIES": ("use_cookies", "bool"),
    "DEBUG": ("debug", "bool"),
    "ID_ATTRIBUTE": ("id_attribute", "str"),
    "CERT_FILE": ("cert_file", "str"),
    "KEY_FILE": ("key_file", "str"),
}


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        # A missing .env simply contributes nothing
        pass
    return values


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _parse_number(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _split(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _parse_headers(name: str, raw: str) -> dict[str, str]:
    headers: dict[str, str] = {}
    for item in _split(raw):
        if "=" not in item:
            raise ConfigError(f"{name} entries must look like Name=value, got {item!r}")
        key, val = item.split("=", 1)
        headers[key.strip()] = val.strip()
    return headers


def load_config_from_env(
    env_path: str | None = None,
    prefix: str = "REST_API_",
    **overrides,
) -> ClientConfig:
    """Create a ClientConfig from environment variables.

    - Variables are looked up as ``prefix + NAME`` (``REST_API_URI``,
        ``REST_API_BEARER``, ``REST_API_RATE_LIMIT``, ...).
    - If 'env_path' is provided, variables from the .env file are used to augment
        lookups (without mutating the process environment). Values in the actual
        environment take precedence over the file.
    - ``HEADERS`` is a comma-separated list of ``Name=value`` pairs and
        ``OAUTH_SCOPES`` a comma-separated list of scopes.
    - OAuth2 client credentials are configured when ``OAUTH_CLIENT_ID``,
        ``OAUTH_CLIENT_SECRET`` and ``OAUTH_TOKEN_URL`` are all present.
    - Keyword overrides name ClientConfig fields and win over everything else.
    """
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    def lookup(suffix: str) -> str | None:
        return env_map.get(prefix + suffix)

    values: dict = {}
    for suffix, (field_name, parser) in _SIMPLE_FIELDS.items():
        raw = lookup(suffix)
        if raw is None:
            continue
        name = prefix + suffix
        if parser == "bool":
            values[field_name] = _parse_bool(name, raw)
        elif parser == "float":
            values[field_name] = _parse_number(name, raw) if raw.strip() else None
        else:
            values[field_name] = raw

    raw_headers = lookup("HEADERS")
    if raw_headers:
        values["headers"] = _parse_headers(prefix + "HEADERS", raw_headers)

    client_id = lookup("OAUTH_CLIENT_ID")
    client_secret = lookup("OAUTH_CLIENT_SECRET")
    token_url = lookup("OAUTH_TOKEN_URL")
    if client_id and client_secret and token_url:
        values["oauth"] = OAuth2Config(
            client_id=client_id,
            client_secret=client_secret,
            token_url=token_url,
            scopes=tuple(_split(lookup("OAUTH_SCOPES") or "")),
        )

    known = {f.name for f in fields(ClientConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"unknown config fields: {', '.join(sorted(unknown))}")
    values.update(overrides)

    if values.get("timeout") is None:
        values.pop("timeout", None)
    if not values.get("uri"):
        raise ConfigError(f"{prefix}URI must be set")
    return ClientConfig(**values)
