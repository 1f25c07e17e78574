import pytest

from config import (
    Settings, chain_name_for_taker_id, get_settlement_address, get_usdc_address,
)

ENV_VARS = (
    "CHAIN_ID", "CHAIN", "MAKER_ADDRESS", "PRIVATE_KEY", "BEBOP_CHAINS", "UNDERLYING",
    "DEFAULT_IV", "QUOTE_VALIDITY", "DERIBIT_TESTNET", "RELAY_WS_PORT", "PORT",
    "RELAY_TRACKED_TOKENS", "WS_PORT", "WS_UPDATE_INTERVAL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings.from_env()

    assert settings.chain_id == 1
    assert settings.chain == "ethereum"
    assert settings.maker_address is None
    assert settings.relay_chains == ["ethereum"]
    assert settings.default_iv == 0.80
    assert settings.quote_validity == 60
    assert settings.relay_ws_port == 3004
    assert settings.ws_port == 3011
    assert settings.ws_update_interval == 5.0
    assert settings.deribit_testnet is False
    assert settings.quote_token_address == get_usdc_address(1)


def test_overrides(monkeypatch):
    monkeypatch.setenv("CHAIN_ID", "8453")
    monkeypatch.setenv("MAKER_ADDRESS", "0x1111111111111111111111111111111111111111")
    monkeypatch.setenv("BEBOP_CHAINS", "ethereum, base,,arbitrum")
    monkeypatch.setenv("UNDERLYING", "btc")
    monkeypatch.setenv("DEFAULT_IV", "0.65")
    monkeypatch.setenv("DERIBIT_TESTNET", "TRUE")
    monkeypatch.setenv("PORT", "4000")
    monkeypatch.setenv("RELAY_TRACKED_TOKENS", "0xABC,0xdef")
    monkeypatch.setenv("WS_UPDATE_INTERVAL", "1500")

    settings = Settings.from_env()

    assert settings.chain_id == 8453
    assert settings.chain == "base"
    assert settings.relay_chains == ["ethereum", "base", "arbitrum"]
    assert settings.underlying == "BTC"
    assert settings.default_iv == 0.65
    assert settings.deribit_testnet is True
    assert settings.relay_ws_port == 4000
    assert settings.relay_tracked_tokens == ["0xabc", "0xdef"]
    assert settings.ws_update_interval == 1.5
    assert settings.quote_token_address == get_usdc_address(8453)


def test_empty_values_fall_back(monkeypatch):
    monkeypatch.setenv("MAKER_ADDRESS", "")
    monkeypatch.setenv("QUOTE_VALIDITY", "")
    settings = Settings.from_env()

    assert settings.maker_address is None
    assert settings.quote_validity == 60


def test_lookup_tables():
    assert get_usdc_address(999) == get_usdc_address(1)
    assert get_settlement_address(137) == get_settlement_address(1)
    assert chain_name_for_taker_id(8453) == "base"
    assert chain_name_for_taker_id(7) == "unknown"


def test_explicit_chain_name_wins(monkeypatch):
    monkeypatch.setenv("CHAIN_ID", "8453")
    monkeypatch.setenv("CHAIN", "base-staging")
    assert Settings.from_env().chain == "base-staging"
