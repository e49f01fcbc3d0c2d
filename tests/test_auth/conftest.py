import json
from typing import Any, Callable, Optional

import httpx
import pytest

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from appkit.crypto_utils import b64_decode, sign_control, verify_control
from appkit.auth import (
    CollectingErrorReporter,
    HandshakeClient,
    HttpTransport,
    InMemoryKeyValueStore,
    SessionStore,
)

WS_URL = "https://example.org/wp-appkit-api/my-app/authentication/"


# -----------------------------------------------------------------------------
# Fake WP-AppKit authentication endpoint
# -----------------------------------------------------------------------------

class FakeAuthServer:
    """
    Plays the server side of the handshake for httpx.MockTransport.

    - get_public_key: checks the client control, answers with its PEM key
    - connect_user: decrypts {user, pass, secret}, checks the control with the
      decrypted secret and the password, answers signed with that secret

    `overrides[action]` can rewrite an answer before it is sent (tampering).
    """
    def __init__(self, private_key: rsa.RSAPrivateKey, *, permissions: Optional[Any] = None):
        self.private_key = private_key
        self.public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")
        self.permissions = {"edit_posts": True, "read": True} if permissions is None else permissions
        self.passwords = {"bob": "pw"}
        self.overrides: dict[str, Callable[[dict], dict]] = {}
        self.requests: list[dict] = []
        self.headers: list[httpx.Headers] = []
        self.client_controls_ok: list[bool] = []
        self.received_secrets: list[str] = []

    def _public_key_answer(self, params: dict) -> dict:
        to_control = params["auth_action"] + params["user"] + params["timestamp"]
        self.client_controls_ok.append(
            verify_control(to_control, params.get("control_key"), params["control"])
        )
        return {
            "result": {"status": 1, "message": ""},
            "public_key": self.public_pem,
            "control": sign_control(self.public_pem + params["user"], params["control_key"]),
        }

    def _connect_answer(self, params: dict) -> dict:
        plain = self.private_key.decrypt(b64_decode(params["encrypted"]), padding.PKCS1v15())
        creds = json.loads(plain.decode("utf-8"))
        secret = creds["secret"]
        self.received_secrets.append(secret)

        to_control = params["auth_action"] + params["user"] + params["timestamp"] + params["encrypted"]
        control_ok = verify_control(to_control, secret, params["control"])
        self.client_controls_ok.append(control_ok)

        if not control_ok or self.passwords.get(creds["user"]) != creds["pass"]:
            return {"result": {"status": 0, "message": "Wrong user or password"}}
        return {
            "result": {"status": 1, "message": ""},
            "authenticated": 1,
            "permissions": self.permissions,
            "control": sign_control("authenticated" + creds["user"], secret),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        self.requests.append(params)
        self.headers.append(request.headers)

        action = params.get("auth_action")
        if action == "get_public_key":
            answer = self._public_key_answer(params)
        elif action == "connect_user":
            answer = self._connect_answer(params)
        else:
            answer = {"result": {"status": 0, "message": "unknown action"}}

        mutate = self.overrides.get(action)
        if mutate is not None:
            answer = mutate(answer)
        return httpx.Response(200, json=answer)

    @property
    def actions(self) -> list[str]:
        return [r.get("auth_action") for r in self.requests]


class StubTransport:
    """Transport that answers from a callable and counts calls."""
    def __init__(self, respond: Callable[[dict], Any], url: str = WS_URL):
        self.url = url
        self.respond = respond
        self.calls: list[dict] = []

    async def get(self, params):
        self.calls.append(dict(params))
        return self.respond(dict(params))


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def server(rsa_private_key) -> FakeAuthServer:
    return FakeAuthServer(rsa_private_key)


@pytest.fixture
def backend() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def session(backend) -> SessionStore:
    return SessionStore(backend, app_slug="test-app")


@pytest.fixture
def reporter() -> CollectingErrorReporter:
    return CollectingErrorReporter()


@pytest.fixture
def mock_http(server) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(server.handler))


@pytest.fixture
def client(session, mock_http, reporter) -> HandshakeClient:
    transport = HttpTransport(WS_URL, client=mock_http)
    return HandshakeClient(session, transport, reporter=reporter)


@pytest.fixture
def ws_url() -> str:
    return WS_URL


@pytest.fixture
def stub_client(session, reporter):
    """Factory: stub_client(respond) -> (HandshakeClient, StubTransport)."""
    def make(respond: Callable[[dict], Any]):
        transport = StubTransport(respond)
        return HandshakeClient(session, transport, reporter=reporter), transport
    return make
