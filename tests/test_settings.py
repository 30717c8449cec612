"""
Tests for environment-driven settings.
"""

import importlib

import pytest
from sqlalchemy.engine import make_url

from cart_engine.utils import settings


@pytest.fixture
def reload_settings(monkeypatch):
    yield lambda: importlib.reload(settings)
    monkeypatch.undo()
    importlib.reload(settings)


def test_default_database_url_names_driver(monkeypatch, reload_settings):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr("dotenv.load_dotenv", lambda *args, **kwargs: False)

    url = make_url(reload_settings().DATABASE_URL)

    assert url.drivername == "postgresql+psycopg2"
    assert url.database == "cartdb"


def test_database_url_from_environment(monkeypatch, reload_settings):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///carts.db")

    assert reload_settings().DATABASE_URL == "sqlite:///carts.db"
