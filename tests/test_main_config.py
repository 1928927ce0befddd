import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gridbot.config import build_grid_config, client_factory_from_general, load_config
from main import credentials_from_config


def test_load_config_expands_env(tmp_path, monkeypatch):
    monkeypatch.setenv("GRID_TEST_KEY", "abc123")
    monkeypatch.delenv("GRID_TEST_MISSING", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "credentials:\n  api_key: ${GRID_TEST_KEY}\n  api_secret: '${GRID_TEST_MISSING}'\n"
        "pairs:\n  - symbol: DOGEUSDT\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg["credentials"]["api_key"] == "abc123"
    assert cfg["credentials"]["api_secret"] == ""
    assert cfg["pairs"][0]["symbol"] == "DOGEUSDT"


def test_build_grid_config_merges_general_and_pair():
    general = {"grid": {"percentage_drop": 0.6, "investment_amount": 2, "poll_interval_ms": 60000}}
    pair = {"symbol": "BTCUSDT", "grid": {"investment_amount": 10, "target_profit_ratio": 0.012}}
    cfg = build_grid_config(pair, general)
    assert cfg.percentage_drop == Decimal("0.6")
    assert cfg.investment_amount == Decimal("10")
    assert cfg.target_profit_ratio == Decimal("0.012")
    assert cfg.poll_interval_ms == 60000
    assert cfg.no_buys is False

    cfg = build_grid_config(pair, general, no_buys=True, poll_seconds=2.5)
    assert cfg.no_buys is True
    assert cfg.poll_interval_ms == 2500


def test_credentials_fall_back_to_environment(monkeypatch):
    monkeypatch.setenv("BINANCE_API_KEY", "env-key")
    monkeypatch.setenv("BINANCE_API_SECRET", "env-secret")
    creds = credentials_from_config({}, "local")
    assert (creds.user_id, creds.api_key, creds.api_secret) == ("local", "env-key", "env-secret")

    monkeypatch.delenv("BINANCE_API_KEY")
    with pytest.raises(SystemExit):
        credentials_from_config({}, "local")


def test_client_factory_reads_binance_section():
    import control_service
    from gridbot.sessions import Credentials

    factory = client_factory_from_general(
        {"binance": {"base_url": "https://testnet.example/", "quantity_precision": 2, "price_precision": 6}}
    )
    client = factory(Credentials(user_id="u", api_key="k", api_secret="s"))
    assert client.base_url == "https://testnet.example"
    assert (client.quantity_precision, client.price_precision, client.recv_window) == (2, 6, 5000)

    # The HTTP service shares these helpers without importing the CLI script.
    assert control_service.client_factory_from_general is client_factory_from_general
