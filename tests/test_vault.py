import pytest

from utils.vault import VaultClient


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("VAULT_ADDR", raising=False)
    return VaultClient()


def test_env_fallback_is_case_insensitive(client, monkeypatch):
    monkeypatch.setenv("PDF_EXTRACTOR_URL", "http://extractor.local")
    assert client.get("pdf_extractor_url") == "http://extractor.local"


def test_missing_key_without_default(client):
    with pytest.raises(KeyError):
        client.get("definitely_not_configured_key")


@pytest.mark.parametrize("raw, expected", [("true", True), ("YES", True), ("0", False), ("off", False)])
def test_get_bool(client, monkeypatch, raw, expected):
    monkeypatch.setenv("EXTRACTION_CACHE_ENABLED", raw)
    assert client.get_bool("extraction_cache_enabled", default=not expected) is expected


def test_get_bool_default(client, monkeypatch):
    monkeypatch.delenv("EXTRACTION_CACHE_ENABLED", raising=False)
    assert client.get_bool("extraction_cache_enabled", True) is True


def test_get_int_falls_back_on_garbage(client, monkeypatch):
    monkeypatch.setenv("WORKER_POLL_INTERVAL", "soon")
    assert client.get_int("worker_poll_interval", 5) == 5
