# config.py
"""
Environment configuration for the airdrop backend.

load_config() is called once at startup and returns a frozen AirdropConfig
that is handed to every component. Wallet roles are never defaulted: the
collection wallet (where buyers pay) and the source wallet (which holds ABC
and signs payouts) must both be set explicitly and must differ.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError
from .pricing import RatePhase, RateSchedule, parse_instant

PACKAGE_DIR = Path(__file__).resolve().parent
BASE_DIR = PACKAGE_DIR.parent

HELIUS_RPC_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
ABC_MINT = "7YESrv9LkAhAQH2kkvbDGjmgnJ94FTFapDQqR6YWUtFc"

# Used when RATE_PHASES_PATH is not set.
DEFAULT_PHASES: List[Dict[str, Any]] = [
    {"name": "presale-1", "start": "2025-11-08", "end": "2025-11-10", "rate": "750"},
]
DEFAULT_LAUNCH_AT = "2026-02-14"
DEFAULT_LAUNCH_RATE = "500"


@dataclass(frozen=True)
class AirdropConfig:
    db_path: str
    rpc_url: str
    collection_wallet: str
    source_wallet: str
    source_secret: str = field(repr=False)
    schedule: RateSchedule
    token_mint: str = ABC_MINT
    token_decimals: int = 6
    stable_mint: str = USDC_MINT
    stable_decimals: int = 6
    native_decimals: int = 9
    rpc_timeout_sec: float = 20.0
    confirm_timeout_sec: float = 90.0
    ledger_timeout_sec: float = 10.0
    oracle_url: str = COINGECKO_SIMPLE_PRICE_URL
    oracle_asset_id: str = "solana"
    oracle_timeout_sec: float = 5.0
    fallback_native_usd_price: Decimal = Decimal("150")
    transfer_event_types: Tuple[str, ...] = ("TRANSFER",)
    webhook_auth_token: str = field(default="", repr=False)
    admin_token: str = field(default="", repr=False)
    cors_origins: Tuple[str, ...] = ()
    log_level: str = "INFO"


def _decimal(name: str, raw: Any) -> Decimal:
    try:
        d = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ConfigError(f"{name} must be a decimal number (got {raw!r})")
    if not d.is_finite():
        raise ConfigError(f"{name} must be finite (got {raw!r})")
    return d


def _int(name: str, raw: Any) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got {raw!r})")


def _float(name: str, raw: Any) -> float:
    try:
        v = float(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number (got {raw!r})")
    if v <= 0:
        raise ConfigError(f"{name} must be positive (got {raw!r})")
    return v


def _csv(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in (raw or "").split(",") if p.strip())


def load_phases(entries: Any) -> List[RatePhase]:
    """Build RatePhase objects from a list of {name, start, end, rate} dicts."""
    if not isinstance(entries, list) or not entries:
        raise ConfigError("rate phases must be a non-empty JSON list")
    phases: List[RatePhase] = []
    for i, e in enumerate(entries):
        if not isinstance(e, dict):
            raise ConfigError(f"rate phase #{i} must be an object")
        try:
            phases.append(
                RatePhase(
                    name=str(e.get("name") or f"phase-{i + 1}"),
                    start=parse_instant(e["start"]),
                    end=parse_instant(e["end"], end_of_day=True),
                    rate=_decimal(f"phase #{i} rate", e["rate"]),
                )
            )
        except KeyError as ke:
            raise ConfigError(f"rate phase #{i} is missing {ke.args[0]!r}")
        except ValueError as ve:
            raise ConfigError(f"rate phase #{i}: {ve}")
    return phases


def load_phases_file(path: str) -> List[RatePhase]:
    p = Path(path)
    if not p.is_absolute():
        p = BASE_DIR / p
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"rate phases file '{p}' not found")
    except json.JSONDecodeError as e:
        raise ConfigError(f"rate phases file '{p}' is not valid JSON: {e}")
    return load_phases(data)


def build_schedule(env: Mapping[str, str]) -> RateSchedule:
    phases_path = (env.get("RATE_PHASES_PATH") or "").strip()
    phases = load_phases_file(phases_path) if phases_path else load_phases(DEFAULT_PHASES)
    try:
        launch_at: datetime = parse_instant(env.get("LAUNCH_AT") or DEFAULT_LAUNCH_AT)
    except ValueError as e:
        raise ConfigError(f"LAUNCH_AT: {e}")
    launch_rate = _decimal("LAUNCH_RATE", env.get("LAUNCH_RATE") or DEFAULT_LAUNCH_RATE)
    try:
        return RateSchedule(phases, launch_at, launch_rate)
    except ValueError as e:
        raise ConfigError(str(e))


def config_from_env(env: Mapping[str, str]) -> AirdropConfig:
    collection = (env.get("COLLECTION_WALLET") or "").strip()
    source = (env.get("AIRDROP_SOURCE_WALLET") or "").strip()
    if not collection or not source:
        raise ConfigError("COLLECTION_WALLET and AIRDROP_SOURCE_WALLET must both be set")
    if collection == source:
        raise ConfigError("COLLECTION_WALLET and AIRDROP_SOURCE_WALLET must be different wallets")

    rpc_url = (env.get("SOLANA_RPC_URL") or "").strip()
    if not rpc_url:
        helius_key = (env.get("HELIUS_API_KEY") or "").strip()
        if not helius_key:
            raise ConfigError("set SOLANA_RPC_URL or HELIUS_API_KEY")
        rpc_url = HELIUS_RPC_TEMPLATE.format(key=helius_key)

    event_types = _csv(env.get("TRANSFER_EVENT_TYPES") or "TRANSFER")
    fallback_price = _decimal("FALLBACK_NATIVE_USD_PRICE", env.get("FALLBACK_NATIVE_USD_PRICE") or "150")
    if fallback_price <= 0:
        raise ConfigError("FALLBACK_NATIVE_USD_PRICE must be positive")

    return AirdropConfig(
        db_path=(env.get("AIRDROP_DB") or str(BASE_DIR / "airdrop.db")).strip(),
        rpc_url=rpc_url,
        collection_wallet=collection,
        source_wallet=source,
        source_secret=(env.get("AIRDROP_SECRET_KEY") or "").strip(),
        schedule=build_schedule(env),
        token_mint=(env.get("TOKEN_MINT") or ABC_MINT).strip(),
        token_decimals=_int("TOKEN_DECIMALS", env.get("TOKEN_DECIMALS") or "6"),
        stable_mint=(env.get("STABLE_MINT") or USDC_MINT).strip(),
        stable_decimals=_int("STABLE_DECIMALS", env.get("STABLE_DECIMALS") or "6"),
        native_decimals=_int("NATIVE_DECIMALS", env.get("NATIVE_DECIMALS") or "9"),
        rpc_timeout_sec=_float("SOLANA_RPC_TIMEOUT_SEC", env.get("SOLANA_RPC_TIMEOUT_SEC") or "20"),
        confirm_timeout_sec=_float("CONFIRM_TIMEOUT_SEC", env.get("CONFIRM_TIMEOUT_SEC") or "90"),
        ledger_timeout_sec=_float("LEDGER_TIMEOUT_SEC", env.get("LEDGER_TIMEOUT_SEC") or "10"),
        oracle_url=(env.get("ORACLE_URL") or COINGECKO_SIMPLE_PRICE_URL).strip(),
        oracle_asset_id=(env.get("ORACLE_ASSET_ID") or "solana").strip(),
        oracle_timeout_sec=_float("ORACLE_TIMEOUT_SEC", env.get("ORACLE_TIMEOUT_SEC") or "5"),
        fallback_native_usd_price=fallback_price,
        transfer_event_types=tuple(t.upper() for t in event_types),
        webhook_auth_token=(env.get("WEBHOOK_AUTH_TOKEN") or "").strip(),
        admin_token=(env.get("ADMIN_TOKEN") or "").strip(),
        cors_origins=_csv(env.get("CORS_ORIGINS") or ""),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
    )


def load_config(env_file: Optional[Path] = None) -> AirdropConfig:
    # Local runs keep secrets in .env; in production the variables are exported.
    load_dotenv(env_file or (BASE_DIR / ".env"))
    return config_from_env(os.environ)
