import base64

import mongomock
import pytest

import models
from app import app as flask_app
from validators import ALPHABET


def b58encode(raw: bytes) -> str:
    n = int.from_bytes(raw, "big")
    out = ""
    while n > 0:
        n, r = divmod(n, 58)
        out = ALPHABET[r] + out
    pad = len(raw) - len(raw.lstrip(b"\x00"))
    return "1" * pad + out


def make_address(i: int) -> str:
    return b58encode(bytes([i % 255 + 1]) * 16 + i.to_bytes(16, "big"))


@pytest.fixture
def addresses():
    return [make_address(i) for i in range(1, 9)]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["ballot_test"]
    models.init_db(database)
    yield database
    models._db = None


@pytest.fixture
def client(db):
    flask_app.config["TESTING"] = True
    flask_app.config["JWT_SECRET_KEY"] = "test-secret-0123456789abcdef0123456789abcdef"
    with flask_app.test_client() as c:
        yield c


@pytest.fixture
def login(client):
    def _login(address):
        r = client.post("/auth/wallet", json={"wallet_address": address})
        assert r.status_code == 200, r.get_json()
        return {"Authorization": f"Bearer {r.get_json()['access_token']}"}
    return _login


def public_key_of(election: dict) -> bytes:
    return base64.b64decode(election["public_key"])
