import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from solana.rpc.api import Client
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from airdrop_backend.airdrop_store import AirdropLedger
from airdrop_backend.config import USDC_MINT, AirdropConfig
from airdrop_backend.oracle import PriceQuote
from airdrop_backend.pricing import RatePhase, RateSchedule
from airdrop_backend.settlement import AirdropSettlement

COLLECTION = str(Keypair().pubkey())
SOURCE_KEYPAIR = Keypair()
SOURCE = str(SOURCE_KEYPAIR.pubkey())

PRESALE_NOON = datetime(2025, 11, 9, 12, 0, tzinfo=timezone.utc)
LAUNCH_AT = datetime(2026, 2, 14, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def schedule():
    return RateSchedule(
        [
            RatePhase(
                "presale-1",
                utc(2025, 11, 8),
                utc(2025, 11, 10, 23, 59, 59, 999999),
                Decimal("750"),
            )
        ],
        LAUNCH_AT,
        Decimal("500"),
    )


@pytest.fixture
def cfg(tmp_path, schedule):
    return AirdropConfig(
        db_path=str(tmp_path / "airdrop.db"),
        rpc_url="http://127.0.0.1:8899",
        collection_wallet=COLLECTION,
        source_wallet=SOURCE,
        source_secret="",
        schedule=schedule,
        stable_mint=USDC_MINT,
        fallback_native_usd_price=Decimal("150"),
    )


@pytest.fixture
def ledger(cfg):
    led = AirdropLedger(cfg.db_path, timeout_sec=5)
    led.init()
    return led


class FakeOracle:
    def __init__(self, price="200", is_fallback=False):
        self.quote = PriceQuote(Decimal(price), is_fallback)
        self.calls = 0

    def fetch_native_usd_price(self):
        self.calls += 1
        return self.quote


class FakeExecutor:
    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def transfer(self, buyer_address, amount):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.calls.append((buyer_address, amount))
            n = len(self.calls)
        if self.error is not None:
            raise self.error
        return f"payout-sig-{n}"


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def make_settlement(cfg, ledger, oracle, executor):
    def _make(**overrides):
        return AirdropSettlement(
            overrides.get("cfg", cfg),
            overrides.get("ledger", ledger),
            overrides.get("oracle", oracle),
            overrides.get("executor", executor),
            now_func=overrides.get("now_func", lambda: PRESALE_NOON),
        )

    return _make


@pytest.fixture
def with_cfg(cfg):
    def _with(**changes):
        return replace(cfg, **changes)

    return _with


def native_payload(signature="sig-native-1", buyer=None, lamports=2_000_000_000, to=COLLECTION, ts=None, **extra):
    transfer = {"toUserAccount": to, "amount": lamports}
    if buyer is not False:
        transfer["fromUserAccount"] = buyer or str(Keypair().pubkey())
    event = {
        "type": "TRANSFER",
        "signature": signature,
        "timestamp": int((ts or PRESALE_NOON).timestamp()),
        "nativeTransfers": [transfer],
        "tokenTransfers": [],
    }
    event.update(extra)
    return [event]


def usdc_payload(signature="sig-usdc-1", buyer=None, minor=25_000_000, to=COLLECTION, ts=None):
    return [
        {
            "type": "TRANSFER",
            "signature": signature,
            "timestamp": int((ts or PRESALE_NOON).timestamp()),
            "nativeTransfers": [],
            "tokenTransfers": [
                {
                    "fromUserAccount": buyer or str(Keypair().pubkey()),
                    "toUserAccount": to,
                    "mint": USDC_MINT,
                    "tokenAmount": minor,
                }
            ],
        }
    ]


@pytest.fixture
def payloads():
    class _P:
        native = staticmethod(native_payload)
        usdc = staticmethod(usdc_payload)

    return _P


def tx_status(level="confirmed", err=None):
    return SimpleNamespace(confirmation_status=getattr(TransactionConfirmationStatus, level.capitalize()), err=err)


class ChainStub:
    """
    Scripted RPC answers patched onto a real solana-py Client. Status and
    block-height scripts are consumed one call at a time; the last entry
    repeats once the script runs out.
    """

    def __init__(
        self,
        existing=(),
        balance=10**15,
        statuses=None,
        heights=None,
        last_valid=1000,
        read_error=None,
        send_error=None,
        status_error=None,
    ):
        self.existing = set(existing)
        self.balance = balance
        self.statuses = list(statuses) if statuses is not None else [tx_status()]
        self.heights = list(heights) if heights is not None else [last_valid]
        self.last_valid = last_valid
        self.read_error = read_error
        self.send_error = send_error
        self.status_error = status_error
        self.sent = []
        self.status_calls = []

    @staticmethod
    def _next(script):
        return script.pop(0) if len(script) > 1 else script[0]

    def client(self):
        c = Client("http://127.0.0.1:8899")
        for name in (
            "get_account_info",
            "get_token_account_balance",
            "get_latest_blockhash",
            "send_raw_transaction",
            "get_signature_statuses",
            "get_block_height",
        ):
            setattr(c, name, getattr(self, name))
        return c

    def get_account_info(self, pubkey, commitment=None):
        if self.read_error is not None:
            raise self.read_error
        return SimpleNamespace(value=SimpleNamespace(lamports=2039280) if pubkey in self.existing else None)

    def get_token_account_balance(self, pubkey, commitment=None):
        return SimpleNamespace(value=SimpleNamespace(amount=str(self.balance), decimals=6))

    def get_latest_blockhash(self, commitment=None):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default(), last_valid_block_height=self.last_valid))

    def send_raw_transaction(self, txn, opts=None):
        tx = Transaction.from_bytes(txn)
        self.sent.append((tx, opts))
        if self.send_error is not None:
            raise self.send_error
        return SimpleNamespace(value=tx.signatures[0])

    def get_signature_statuses(self, signatures, search_transaction_history=False):
        self.status_calls.append(search_transaction_history)
        if self.status_error is not None:
            raise self.status_error
        return SimpleNamespace(value=[self._next(self.statuses)])

    def get_block_height(self, commitment=None):
        return SimpleNamespace(value=self._next(self.heights))
