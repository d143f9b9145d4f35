import asyncio
import time

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from bookme import auth
from bookme.models import User

APP_ID = "app-test"
DID = "did:privy:abc123"


@pytest.fixture
def privy_key(monkeypatch):
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    monkeypatch.setattr(auth, "PRIVY_APP_ID", APP_ID)
    monkeypatch.setattr(auth, "PRIVY_APP_SECRET", None)
    monkeypatch.setattr(auth, "PRIVY_VERIFICATION_KEY", public_pem)
    return private_pem


def _token(private_pem, **overrides):
    now = int(time.time())
    claims = {"sub": DID, "aud": APP_ID, "iss": "privy.io", "iat": now, "exp": now + 3600}
    claims.update(overrides)
    return jwt.encode(claims, private_pem, algorithm="ES256")


def test_valid_token(privy_key):
    assert auth.verify_privy_token(_token(privy_key))["sub"] == DID


def test_expired_token_sets_header(privy_key):
    with pytest.raises(HTTPException) as exc:
        auth.verify_privy_token(_token(privy_key, exp=int(time.time()) - 60))
    assert exc.value.status_code == 401
    assert exc.value.headers == {"X-Token-Expired": "true"}


def test_wrong_audience_is_rejected(privy_key):
    with pytest.raises(HTTPException) as exc:
        auth.verify_privy_token(_token(privy_key, aud="other-app"))
    assert exc.value.detail == "Invalid authentication token"


def test_did_maps_to_stable_uuid():
    assert auth.privy_did_to_uuid(DID) == auth.privy_did_to_uuid(DID)
    assert auth.privy_did_to_uuid(DID) != auth.privy_did_to_uuid("did:privy:other")


def test_first_request_creates_user(db, privy_key):
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=_token(privy_key, email="new@example.com"))
    user = asyncio.run(auth.get_current_user(credentials, db))

    assert user.id == auth.privy_did_to_uuid(DID)
    assert user.privy_did == DID
    assert db.query(User).count() == 1

    again = asyncio.run(auth.get_current_user(credentials, db))
    assert again.id == user.id
    assert db.query(User).count() == 1


def test_wallets_from_privy_user_prefers_embedded_privy_wallet():
    data = {
        "linked_accounts": [
            {"type": "wallet", "wallet_client_type": "metamask", "address": "0xexternal"},
            {"type": "wallet", "wallet_client_type": "privy", "address": "0xembedded"},
            {"type": "smart_wallet", "address": "0xsmart"},
        ]
    }
    assert auth._wallets_from_privy_user(data) == ("0xembedded", "0xsmart")


def test_internal_key(monkeypatch):
    monkeypatch.setattr(auth, "INTERNAL_API_KEY", "k")
    auth.verify_internal_api_key("k")
    with pytest.raises(HTTPException) as exc:
        auth.verify_internal_api_key(None)
    assert exc.value.status_code == 401
