import os
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from _helpers import *

from meme_collection.app import create_app
from meme_collection.db import init_db


@pytest.fixture
def engine():
    eng = init_db("sqlite://")
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def fake_oauth(app_settings):
    return FakeGoogleOAuthClient(app_settings)


@pytest.fixture
def app(app_settings, engine, fake_oauth):
    return create_app(app_settings, engine=engine, oauth_client=fake_oauth)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def alice(client, fake_oauth):
    """Browser logged in as Alice."""
    resp = login_as(client, fake_oauth, code="code-alice")
    assert resp.status_code == 302
    return client


@pytest.fixture
def bob(app, client, fake_oauth):
    """Second browser, logged in as Bob. Shares the app started by `client`."""
    other = TestClient(app)
    resp = login_as(other, fake_oauth, code="code-bob", sub="g-bob", name="Bob", email="bob@example.com")
    assert resp.status_code == 302
    return other
