import datetime
import json
import socketserver
import threading
import time

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

BASE_URI = "http://backend.test/api"

_PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY")


@pytest.fixture(autouse=True)
def _no_env_proxies(monkeypatch):
    # A proxy in the developer's environment would bypass the mock transport.
    for name in _PROXY_VARS:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(name.lower(), raising=False)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.start = start
        self.t = start
        self.sleeps: list[float] = []

    @property
    def elapsed(self) -> float:
        return self.t - self.start

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds

    async def async_sleep(self, seconds: float) -> None:
        self.sleep(seconds)


@pytest.fixture
def clock():
    return FakeClock()


class Backend:
    """Scripted HTTP backend for httpx.MockTransport.

    Each route holds a queue of ``(status, body[, headers])`` tuples or exceptions.
    The last entry repeats once the queue is down to one.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list] = {}

    def route(self, method: str, path: str, *replies) -> None:
        self._routes[(method, path)] = list(replies)

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, text="no route")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        status, body, *rest = reply
        if not isinstance(body, str):
            body = json.dumps(body)
        return httpx.Response(status, text=body, headers=rest[0] if rest else None)


@pytest.fixture
def backend():
    return Backend()


def attach(client, backend: Backend):
    """Route every request the executor sends to ``backend``."""
    client._http._transport = httpx.MockTransport(backend)
    return client


def use_clock(client, clock: FakeClock, is_async: bool = False):
    client._now = clock.now
    client._sleep = clock.async_sleep if is_async else clock.sleep
    if client._limiter is not None:
        client._limiter._now = clock.now
        client._limiter._sleep = clock.async_sleep if is_async else clock.sleep
        client._limiter._updated = clock.now()
    return client


# ---------- slow backend ----------


class _TrickleHandler(socketserver.BaseRequestHandler):
    """Answers any request with a 6 byte body sent one byte every 0.3s."""

    body = b"xxxxxx"
    gap = 0.3

    def handle(self):
        self.request.recv(65536)
        head = (
            b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n"
            b"Content-Length: %d\r\nConnection: close\r\n\r\n" % len(self.body)
        )
        try:
            self.request.sendall(head)
            for byte in self.body:
                time.sleep(self.gap)
                self.request.sendall(bytes([byte]))
        except OSError:
            # Client gave up.
            return


@pytest.fixture
def trickle_server():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _TrickleHandler)
    server.daemon_threads = True
    server.block_on_close = False
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


# ---------- key material ----------


def key_to_pem(key) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def self_signed_pem(key, common_name: str) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        # Lets a peer trust the certificate directly.
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def make_identity(common_name: str) -> tuple[str, str]:
    """Fresh (certificate PEM, private key PEM) pair."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return self_signed_pem(key, common_name), key_to_pem(key)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key):
    return key_to_pem(rsa_key)


@pytest.fixture(scope="session")
def public_key_pem(rsa_key):
    return rsa_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


@pytest.fixture(scope="session")
def cert_pem(rsa_key):
    return self_signed_pem(rsa_key, "restapi-client-test")


@pytest.fixture
def service_account_key(private_key_pem):
    return json.dumps(
        {
            "type": "service_account",
            "client_email": "robot@project.iam.gserviceaccount.com",
            "private_key_id": "kid-1",
            "private_key": private_key_pem,
            "token_uri": "https://oauth2.googleapis.com/token",
        }
    )
