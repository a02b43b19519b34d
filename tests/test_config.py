"""Tests for environment-driven configuration."""

import pytest

from ledgermind.config import LedgerConfig, normalize_address
from ledgermind.errors import ConfigError


FACTORY = "0x" + "Aa" * 20


def test_normalize_address():
    assert normalize_address(" 0X" + "AB" * 20 + " ") == "0x" + "ab" * 20
    with pytest.raises(ValueError):
        normalize_address("0x1234")


def test_defaults_live_under_home(tmp_path):
    config = LedgerConfig(home=tmp_path)
    assert config.db_path == tmp_path / "ledger.sqlite3"
    assert config.audit_path == tmp_path / "audit.jsonl"
    assert config.audit_key_path == tmp_path / "secrets" / "audit_hmac.key"
    assert config.blob_dir == tmp_path / "blobs"
    assert config.block_window == 1000


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LEDGERMIND_HOME", str(tmp_path))
    monkeypatch.setenv("LEDGERMIND_FACTORY_ADDRESS", FACTORY)
    monkeypatch.setenv("LEDGERMIND_BLOCK_WINDOW", "50")
    monkeypatch.setenv("LEDGERMIND_POLL_INTERVAL", "2.5")
    monkeypatch.setenv("LEDGERMIND_IPFS_API_URL", "http://127.0.0.1:5001")

    config = LedgerConfig.from_env()

    assert config.home == tmp_path
    assert config.require_factory() == FACTORY.lower()
    assert config.block_window == 50
    assert config.poll_interval == 2.5
    assert config.ipfs_api_url == "http://127.0.0.1:5001"


def test_from_env_rejects_bad_values(monkeypatch, tmp_path):
    monkeypatch.setenv("LEDGERMIND_HOME", str(tmp_path))
    monkeypatch.setenv("LEDGERMIND_BLOCK_WINDOW", "lots")
    with pytest.raises(ConfigError, match="LEDGERMIND_BLOCK_WINDOW"):
        LedgerConfig.from_env()

    monkeypatch.delenv("LEDGERMIND_BLOCK_WINDOW")
    monkeypatch.setenv("LEDGERMIND_FACTORY_ADDRESS", "not-an-address")
    with pytest.raises(ConfigError):
        LedgerConfig.from_env()


def test_require_factory_when_unset(monkeypatch, tmp_path):
    monkeypatch.setenv("LEDGERMIND_HOME", str(tmp_path))
    monkeypatch.delenv("LEDGERMIND_FACTORY_ADDRESS", raising=False)
    with pytest.raises(ConfigError, match="LEDGERMIND_FACTORY_ADDRESS"):
        LedgerConfig.from_env().require_factory()


def test_invalid_settings_rejected(tmp_path):
    with pytest.raises(ConfigError):
        LedgerConfig(home=tmp_path, poll_interval=0)
    with pytest.raises(ConfigError):
        LedgerConfig(home=tmp_path, auto_fund_buffer=-1)


def test_token_comes_from_each_intent_not_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LEDGERMIND_HOME", str(tmp_path))
    monkeypatch.setenv("LEDGERMIND_TOKEN_ADDRESS", "not-an-address")
    config = LedgerConfig.from_env()
    assert not hasattr(config, "token_address")
