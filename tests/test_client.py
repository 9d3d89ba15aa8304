import base64
import json
import logging
import time

import httpx
import pytest
from conftest import BASE_URI, attach

from restapi_client import (
    APIClient,
    ClientConfig,
    ConfigError,
    GCPOauthConfig,
    HTTPStatusError,
    OAuth2Config,
    TransportError,
)


def make_client(backend, **overrides):
    return attach(APIClient(ClientConfig(uri=BASE_URI, **overrides)), backend)


def test_joins_path_and_returns_body_verbatim(backend):
    backend.route("GET", "/api/things/1", (200, '  {"id": "1"}\n'))
    client = make_client(backend)
    assert client.read("/things/1") == '  {"id": "1"}\n'
    assert str(backend.requests[0].url) == "http://backend.test/api/things/1"


def test_trailing_slash_on_uri_is_dropped(backend):
    backend.route("GET", "/api/x", (200, "ok"))
    client = attach(APIClient(ClientConfig(uri=BASE_URI + "/")), backend)
    assert client.uri == BASE_URI
    assert client.send_request("GET", "/x") == "ok"


def test_non_json_body_is_fine_without_async_settings(backend):
    backend.route("GET", "/api/list", (200, "[1, 2]"))
    assert make_client(backend).read("/list") == "[1, 2]"


def test_xssi_prefix_is_stripped(backend):
    backend.route("GET", "/api/x", (200, ")]}'\n{\"a\": 1}"))
    client = make_client(backend, xssi_prefix=")]}'\n")
    assert client.read("/x") == '{"a": 1}'


def test_content_type_only_when_body_present(backend):
    backend.route("POST", "/api/x", (201, "{}"))
    backend.route("GET", "/api/x", (200, "{}"))
    client = make_client(backend)
    client.create("/x", '{"name": "a"}')
    client.read("/x")
    post, get = backend.requests
    assert post.headers["content-type"] == "application/json"
    assert post.content == b'{"name": "a"}'
    assert "content-type" not in get.headers


def test_custom_headers_replace_defaults(backend):
    backend.route("PUT", "/api/x", (200, "{}"))
    client = make_client(backend, headers={"Content-Type": "text/plain", "X-Trace": "t1"})
    client.update("/x", "hello")
    req = backend.requests[0]
    assert req.headers["content-type"] == "text/plain"
    assert req.headers["x-trace"] == "t1"


def test_basic_auth_wins_over_custom_authorization_header(backend):
    backend.route("GET", "/api/x", (200, "{}"))
    client = make_client(
        backend, username="u", password="p", headers={"Authorization": "Token nope"}
    )
    client.read("/x")
    expected = "Basic " + base64.b64encode(b"u:p").decode()
    assert backend.requests[0].headers["authorization"] == expected


def test_static_bearer(backend):
    backend.route("GET", "/api/x", (200, "{}"))
    client = make_client(backend, bearer="abc", username="u", password="p")
    client.read("/x")
    assert backend.requests[0].headers["authorization"] == "Bearer abc"


def test_method_defaults_and_overrides(backend):
    backend.route("DELETE", "/api/x/1", (204, ""))
    backend.route("PATCH", "/api/x/1", (200, "{}"))
    client = make_client(backend, update_method="PATCH", destroy_data='{"force": true}')
    assert client.config.create_method == "POST"
    assert client.config.read_method == "GET"
    assert client.config.id_attribute == "id"
    client.update("/x/1", "{}")
    assert client.destroy("/x/1") == ""
    assert backend.paths() == ["PATCH /api/x/1", "DELETE /api/x/1"]
    assert backend.requests[1].content == b'{"force": true}'


def test_non_2xx_raises_with_status_and_body(backend):
    backend.route("GET", "/api/missing", (404, "not here"))
    with pytest.raises(HTTPStatusError) as ei:
        make_client(backend).read("/missing")
    assert ei.value.status_code == 404  # noqa: PLR2004, http status code can be constant
    assert ei.value.body == "not here"
    assert "unexpected response code '404'" in str(ei.value)
    assert ei.value.to_dict()["error"] == "HTTP_STATUS_ERROR"


def test_transport_error_is_not_retried(backend):
    backend.route("GET", "/api/x", httpx.ConnectError("connection refused"))
    client = make_client(backend)
    with pytest.raises(TransportError):
        client.read("/x")
    assert len(backend.requests) == 1


def test_empty_uri_is_a_config_error():
    with pytest.raises(ConfigError):
        APIClient(ClientConfig(uri=""))


def test_two_token_configs_conflict():
    cfg = ClientConfig(
        uri=BASE_URI,
        oauth=OAuth2Config("id", "secret", "https://idp.test/token"),
        gcp_oauth=GCPOauthConfig(service_account_key="{}"),
    )
    with pytest.raises(ConfigError):
        APIClient(cfg)


def test_incomplete_oauth_config():
    cfg = ClientConfig(uri=BASE_URI, oauth=OAuth2Config("id", "", "https://idp.test/token"))
    with pytest.raises(ConfigError):
        APIClient(cfg)


def test_cookies_dropped_unless_enabled(backend):
    backend.route("GET", "/api/login", (200, "{}", {"set-cookie": "session=s1; Path=/"}))
    backend.route("GET", "/api/me", (200, "{}"))

    client = make_client(backend)
    client.read("/login")
    client.read("/me")
    assert "cookie" not in backend.requests[1].headers

    client = make_client(backend, use_cookies=True)
    client.read("/login")
    client.read("/me")
    assert backend.requests[3].headers["cookie"] == "session=s1"


def test_describe_redacts_secrets():
    client = APIClient(ClientConfig(uri=BASE_URI, username="u", password="hunter2"))
    text = client.describe()
    assert "uri: " + BASE_URI in text
    assert "auth: basic" in text
    assert "hunter2" not in text


def test_debug_dumps_redact_authorization(backend, caplog):
    backend.route("GET", "/api/x", (200, '{"ok": true}'))
    caplog.set_level(logging.DEBUG, logger="restapi_client")
    client = make_client(backend, bearer="s3cret", debug=True)
    client.read("/x")
    assert "--- [REQUEST TO backend.test] ---" in caplog.text
    assert "--- [RESPONSE FROM backend.test] ---" in caplog.text
    assert '{"ok": true}' in caplog.text
    assert "s3cret" not in caplog.text


def test_context_manager_closes(backend):
    backend.route("GET", "/api/x", (200, "{}"))
    with make_client(backend) as client:
        client.read("/x")
    assert client._http.is_closed


def test_from_env(monkeypatch, backend):
    monkeypatch.setenv("REST_API_URI", BASE_URI)
    monkeypatch.setenv("REST_API_BEARER", "envtok")
    client = attach(APIClient.from_env(), backend)
    backend.route("GET", "/api/x", (200, "{}"))
    client.read("/x")
    assert backend.requests[0].headers["authorization"] == "Bearer envtok"


# ---------- overall timeout ----------


def test_timeout_bounds_the_whole_body_read(trickle_server):
    # Each byte arrives well inside the timeout but the body as a whole does not.
    client = APIClient(ClientConfig(uri=trickle_server, timeout=0.5))
    started = time.monotonic()
    with pytest.raises(TransportError) as ei:
        client.read("/slow")
    assert time.monotonic() - started < 1.5  # noqa: PLR2004
    assert ei.value.details["timeout"] == 0.5  # noqa: PLR2004
    assert "exceeded the client timeout of 0.5s" in str(ei.value)
    client.close()


def test_request_carries_what_is_left_of_the_timeout(backend):
    backend.route("GET", "/api/x", (200, "{}"))
    client = make_client(backend, timeout=2)
    client.read("/x")
    timeouts = backend.requests[0].extensions["timeout"]
    assert 0 < timeouts["read"] <= 2  # noqa: PLR2004
    assert 0 < timeouts["connect"] <= 2  # noqa: PLR2004


def test_no_timeout_leaves_requests_unbounded(backend):
    backend.route("GET", "/api/x", (200, "{}"))
    client = make_client(backend)
    client.read("/x")
    assert backend.requests[0].extensions["timeout"]["read"] is None


# ---------- logger level ----------


def test_debug_level_is_put_back_on_close(backend):
    logger = logging.getLogger("restapi_client")
    before = logger.level
    client = make_client(backend, debug=True)
    assert logger.level == logging.DEBUG
    client.close()
    assert logger.level == before

    quiet = make_client(backend)
    assert logger.level == before
    quiet.close()
    assert logger.level == before


# ---------- update_data ----------


def test_update_overlays_update_data(backend):
    backend.route("PUT", "/api/things/1", (200, "{}"))
    client = make_client(backend, update_data='{"force": true, "name": "override"}')
    client.update("/things/1", '{"id": "1", "name": "a"}')
    assert json.loads(backend.requests[0].content) == {
        "id": "1",
        "name": "override",
        "force": True,
    }


def test_update_without_update_data_sends_payload_verbatim(backend):
    backend.route("PUT", "/api/things/1", (200, "{}"))
    client = make_client(backend)
    client.update("/things/1", '{"id": "1"}')
    assert backend.requests[0].content == b'{"id": "1"}'


@pytest.mark.parametrize(
    ("update_data", "payload"),
    [("[1, 2]", '{"id": "1"}'), ('{"force": true}', "not json"), ('{"a": 1}', '"str"')],
)
def test_update_data_needs_json_objects(backend, update_data, payload):
    client = make_client(backend, update_data=update_data)
    with pytest.raises(ConfigError):
        client.update("/things/1", payload)
    assert backend.requests == []


def test_scope_in_oauth_endpoint_params_is_a_config_error():
    oauth = OAuth2Config(
        "cid", "cs", "https://idp.test/token", scopes=("a",), endpoint_params={"scope": "b"}
    )
    with pytest.raises(ConfigError):
        APIClient(ClientConfig(uri=BASE_URI, oauth=oauth))
