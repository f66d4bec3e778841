import json
from decimal import Decimal

import pytest

from airdrop_backend.config import HELIUS_RPC_TEMPLATE, config_from_env, load_phases
from airdrop_backend.errors import ConfigError

from conftest import COLLECTION, PRESALE_NOON, SOURCE, utc


def _env(**extra):
    env = {
        "COLLECTION_WALLET": COLLECTION,
        "AIRDROP_SOURCE_WALLET": SOURCE,
        "HELIUS_API_KEY": "k123",
    }
    env.update(extra)
    return env


def test_defaults():
    cfg = config_from_env(_env())
    assert cfg.rpc_url == HELIUS_RPC_TEMPLATE.format(key="k123")
    assert cfg.token_decimals == 6
    assert cfg.native_decimals == 9
    assert cfg.transfer_event_types == ("TRANSFER",)
    assert cfg.schedule.resolve(PRESALE_NOON) == Decimal("750")
    assert cfg.schedule.resolve(utc(2026, 3, 1)) == Decimal("500")


def test_explicit_rpc_url_wins():
    cfg = config_from_env(_env(SOLANA_RPC_URL="http://rpc.local"))
    assert cfg.rpc_url == "http://rpc.local"


@pytest.mark.parametrize(
    "missing",
    [{"COLLECTION_WALLET": ""}, {"AIRDROP_SOURCE_WALLET": ""}, {"AIRDROP_SOURCE_WALLET": COLLECTION}],
)
def test_wallet_roles_must_be_explicit_and_distinct(missing):
    with pytest.raises(ConfigError):
        config_from_env(_env(**missing))


def test_rpc_required():
    with pytest.raises(ConfigError):
        config_from_env(_env(HELIUS_API_KEY=""))


@pytest.mark.parametrize(
    "bad",
    [
        {"TOKEN_DECIMALS": "six"},
        {"LAUNCH_RATE": "lots"},
        {"LAUNCH_AT": "someday"},
        {"ORACLE_TIMEOUT_SEC": "0"},
        {"FALLBACK_NATIVE_USD_PRICE": "-1"},
    ],
)
def test_bad_values_raise_config_error(bad):
    with pytest.raises(ConfigError):
        config_from_env(_env(**bad))


def test_phases_file(tmp_path):
    path = tmp_path / "phases.json"
    path.write_text(
        json.dumps(
            [
                {"name": "early", "start": "2025-10-01", "end": "2025-10-31", "rate": "900"},
                {"name": "main", "start": "2025-11-01T00:00:00Z", "end": "2025-11-30", "rate": 800},
            ]
        )
    )
    cfg = config_from_env(_env(RATE_PHASES_PATH=str(path), LAUNCH_AT="2026-01-01", LAUNCH_RATE="400"))
    assert [p.name for p in cfg.schedule.phases] == ["early", "main"]
    assert cfg.schedule.resolve(utc(2025, 10, 31, 23, 0)) == Decimal("900")
    assert cfg.schedule.resolve(utc(2025, 11, 30, 23, 0)) == Decimal("800")
    assert cfg.schedule.resolve(utc(2026, 1, 1)) == Decimal("400")


def test_missing_phases_file():
    with pytest.raises(ConfigError):
        config_from_env(_env(RATE_PHASES_PATH="/nonexistent/phases.json"))


@pytest.mark.parametrize(
    "entries",
    [
        [],
        {"start": "2025-01-01"},
        ["2025-01-01"],
        [{"start": "2025-01-01", "end": "2025-01-02"}],
        [{"start": "2025-01-01", "end": "2025-01-02", "rate": "many"}],
    ],
)
def test_bad_phase_entries(entries):
    with pytest.raises(ConfigError):
        load_phases(entries)


def test_overlapping_phase_file_rejected(tmp_path):
    path = tmp_path / "phases.json"
    path.write_text(
        json.dumps(
            [
                {"start": "2025-01-01", "end": "2025-01-10", "rate": "1"},
                {"start": "2025-01-05", "end": "2025-01-20", "rate": "2"},
            ]
        )
    )
    with pytest.raises(ConfigError):
        config_from_env(_env(RATE_PHASES_PATH=str(path)))
