"""Shared fixtures: an in-process identity provider and downstream network.

Tokens are signed with a throwaway RSA key. The matching JWKS, the
client-credentials token endpoint and the notification endpoint are served
by an ``httpx.MockTransport`` handed to each app's ``create_app``.
"""

import copy
import json
import time
from urllib.parse import parse_qsl

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from services.shared.config import Settings

DEFAULTS = Settings()
ISSUER = DEFAULTS.issuer
JWKS_URL = DEFAULTS.jwks_url
TOKEN_URL = DEFAULTS.token_url
KID = "test-key"

CLAIM_SETS = {
    "user": {
        "sub": "user-123",
        "email": "john@example.com",
        "name": "John Doe",
        "given_name": "John",
        "family_name": "Doe",
        "preferred_username": "john",
        "azp": "shop-ui",
        "realm_access": {"roles": ["user"]},
        "canCheckout": "true",
    },
    "admin": {
        "sub": "admin-1",
        "email": "admin@example.com",
        "name": "Alice Admin",
        "given_name": "Alice",
        "family_name": "Admin",
        "preferred_username": "admin",
        "azp": "shop-ui",
        "realm_access": {"roles": ["user", "admin"]},
        "canCheckout": True,
    },
    "service": {
        "sub": "service-account-shop-api",
        "azp": "shop-api",
        "preferred_username": "service-account-shop-api",
        "realm_access": {"roles": ["offline_access"]},
    },
}


def public_jwk(private_key, kid: str) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


class FakeNetwork:
    """Keycloak (JWKS + token endpoint) and the notification service."""

    def __init__(self, jwks: dict) -> None:
        self.jwks = jwks
        self.jwks_requests = 0
        self.token_requests: list[dict] = []
        self.token_status = 200
        self.token_payload = {"access_token": "service-token-abc", "expires_in": 300}
        self.notifications: list[dict] = []
        self.notification_headers: list[str | None] = []
        # optional async (request) -> httpx.Response override
        self.notification_handler = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url == JWKS_URL:
            self.jwks_requests += 1
            return httpx.Response(200, json=self.jwks)

        if url == TOKEN_URL:
            self.token_requests.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(self.token_status, json=self.token_payload)

        if request.url.path == "/api/notifications/order":
            if self.notification_handler is not None:
                return await self.notification_handler(request)
            self.notifications.append(json.loads(request.content))
            self.notification_headers.append(request.headers.get("Authorization"))
            return httpx.Response(200, json={"success": True, "template": "order_confirmation_basic"})

        return httpx.Response(404, json={"error": "NotFound"})


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def make_token(rsa_key):
    """Signed access token. ``kind`` picks a claim set; keyword args override claims."""

    def _make(kind="user", *, issuer=ISSUER, expires_in=300, key=None, kid=KID, **claims):
        now = int(time.time())
        payload = {
            "iss": issuer,
            "iat": now,
            "exp": now + expires_in,
            **copy.deepcopy(CLAIM_SETS[kind]),
            **claims,
        }
        return jwt.encode(payload, key or rsa_key, algorithm="RS256", headers={"kid": kid})

    return _make


@pytest.fixture
def bearer():
    def _bearer(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return _bearer


@pytest.fixture
def network(rsa_key):
    return FakeNetwork({"keys": [public_jwk(rsa_key, KID)]})


@pytest.fixture
def transport(network):
    return httpx.MockTransport(network)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        service_name="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        simulated_delay_scale=0,
        notification_timeout=0.5,
    )
