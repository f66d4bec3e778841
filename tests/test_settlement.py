import threading
from decimal import Decimal

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from airdrop_backend.airdrop_models import PaidAsset, PaymentEvent
from airdrop_backend.errors import (
    InsufficientSourceBalance,
    InvalidAddress,
    NetworkTimeout,
    TransferUnconfirmed,
)
from airdrop_backend.solana_transfer import SolanaTokenTransfer

from conftest import (
    SOURCE_KEYPAIR,
    ChainStub,
    FakeExecutor,
    FakeOracle,
    PRESALE_NOON,
    native_payload,
    tx_status,
    usdc_payload,
    utc,
)

BUYER = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


def test_native_payment_settles(make_settlement, ledger, executor, oracle):
    out = make_settlement().process(native_payload(buyer=BUYER, lamports=2_000_000_000))
    assert out.status == "settled"
    # 2 SOL * 200 USD * 750 ABC * 10^6
    assert executor.calls == [(BUYER, 300_000_000_000)]
    assert oracle.calls == 1

    rec = ledger.get_settlement("sig-native-1")
    assert rec.payout_amount == 300_000_000_000
    assert rec.payout_tx_id == "payout-sig-1"
    assert rec.rate_applied == Decimal("750")
    assert rec.native_usd_price == Decimal("200")
    assert rec.price_is_fallback is False
    assert rec.paid_asset is PaidAsset.NATIVE


def test_stable_payment_skips_oracle(make_settlement, ledger, executor, oracle):
    out = make_settlement().process(usdc_payload(buyer=BUYER, minor=25_000_000))
    assert out.status == "settled"
    assert executor.calls == [(BUYER, 18_750_000_000)]
    assert oracle.calls == 0
    assert ledger.get_settlement("sig-usdc-1").native_usd_price is None


def test_post_launch_payment_uses_launch_rate(make_settlement, executor):
    out = make_settlement().process(usdc_payload(buyer=BUYER, minor=1_000_000, ts=utc(2026, 3, 1)))
    assert out.status == "settled"
    assert out.record.rate_applied == Decimal("500")
    assert executor.calls == [(BUYER, 500_000_000)]


def test_redelivery_is_duplicate(make_settlement, ledger, executor):
    s = make_settlement()
    payload = native_payload(buyer=BUYER)
    assert s.process(payload).status == "settled"
    second = s.process(payload)
    assert second.status == "duplicate"
    assert len(executor.calls) == 1
    assert [e["type"] for e in ledger.fetch_events()] == ["duplicate", "settled"]


def test_concurrent_deliveries_settle_once(make_settlement, ledger):
    slow = FakeExecutor(delay=0.05)
    s = make_settlement(executor=slow)
    payload = native_payload(buyer=BUYER)
    barrier = threading.Barrier(2)
    results = []

    def deliver():
        barrier.wait()
        results.append(s.process(payload).status)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["duplicate", "settled"]
    assert len(slow.calls) == 1
    assert ledger.get_settlement("sig-native-1") is not None


def test_missing_buyer_never_touches_ledger_or_chain(make_settlement, ledger, executor):
    out = make_settlement().process(native_payload(buyer=False))
    assert out.status == "ignored"
    assert out.reason == "invalid_buyer"
    assert executor.calls == []
    assert not ledger.has_settled("sig-native-1")


def test_event_without_buyer_is_ignored_at_settle(make_settlement, executor):
    ev = PaymentEvent("sig-x", None, PaidAsset.STABLE, Decimal("5"), 5_000_000, PRESALE_NOON)
    out = make_settlement().settle(ev)
    assert (out.status, out.reason) == ("ignored", "invalid_buyer")
    assert executor.calls == []


def test_oracle_fallback_is_flagged(make_settlement, ledger, executor):
    out = make_settlement(oracle=FakeOracle(price="150", is_fallback=True)).process(
        native_payload(buyer=BUYER, lamports=1_000_000_000)
    )
    assert out.status == "settled"
    assert executor.calls == [(BUYER, 112_500_000_000)]
    rec = ledger.get_settlement("sig-native-1")
    assert rec.price_is_fallback is True
    assert rec.native_usd_price == Decimal("150")


def test_dust_payment_is_zero_payout(make_settlement, executor):
    out = make_settlement(oracle=FakeOracle(price="0.000001")).process(native_payload(buyer=BUYER, lamports=1))
    assert (out.status, out.reason) == ("ignored", "zero_payout")
    assert executor.calls == []


def test_retryable_failure_releases_claim(make_settlement, ledger):
    failing = FakeExecutor(error=NetworkTimeout("rpc down"))
    payload = native_payload(buyer=BUYER)
    out = make_settlement(executor=failing).process(payload)
    assert out.status == "retryable_failure"
    assert not ledger.has_settled("sig-native-1")

    ok = FakeExecutor()
    assert make_settlement(executor=ok).process(payload).status == "settled"
    assert len(ok.calls) == 1


@pytest.mark.parametrize("error", [InvalidAddress("bad"), InsufficientSourceBalance("empty")])
def test_fatal_failure_is_not_retried(make_settlement, ledger, error):
    failing = FakeExecutor(error=error)
    payload = native_payload(buyer=BUYER)
    out = make_settlement(executor=failing).process(payload)
    assert out.status == "failed"
    assert out.reason == type(error).__name__

    again = FakeExecutor()
    assert make_settlement(executor=again).process(payload).status == "duplicate"
    assert again.calls == []
    assert ledger.get_settlement("sig-native-1") is None


def test_transfer_failed_on_chain_is_never_recorded(make_settlement, ledger):
    mint = Pubkey.new_unique()
    chain = ChainStub(
        existing={get_associated_token_address(SOURCE_KEYPAIR.pubkey(), mint)},
        statuses=[tx_status("confirmed", err="InstructionError(0, InsufficientFunds)")],
    )
    executor = SolanaTokenTransfer(chain.client(), SOURCE_KEYPAIR, mint, 6, sleep=lambda s: None)

    out = make_settlement(executor=executor).process(native_payload(buyer=str(Keypair().pubkey())))
    assert out.status == "failed"
    assert out.reason == "TransferRejected"
    assert len(chain.sent) == 1
    assert ledger.get_settlement("sig-native-1") is None
    assert ledger.fetch_review_items() == []


def test_unconfirmed_transfer_goes_to_review(make_settlement, ledger):
    failing = FakeExecutor(error=TransferUnconfirmed("no status", signature="sig-out"))
    payload = native_payload(buyer=BUYER)
    out = make_settlement(executor=failing).process(payload)
    assert out.status == "needs_review"
    items = ledger.fetch_review_items()
    assert [(i["reason"], i["payout_tx_id"]) for i in items] == [("transfer_unconfirmed", "sig-out")]
    assert make_settlement(executor=FakeExecutor()).process(payload).status == "duplicate"


def test_ledger_write_failure_after_transfer_is_flagged(make_settlement, ledger, executor, monkeypatch, caplog):
    def broken_record(rec):
        raise OSError("disk full")

    monkeypatch.setattr(ledger, "record", broken_record)
    payload = native_payload(buyer=BUYER)
    out = make_settlement().process(payload)

    assert out.status == "needs_review"
    assert out.reason == "ledger_write_failed"
    assert len(executor.calls) == 1
    items = ledger.fetch_review_items()
    assert items[0]["payout_tx_id"] == "payout-sig-1"
    assert items[0]["detail"]["payout_amount"] == 300_000_000_000
    assert any("payout-sig-1" in r.getMessage() for r in caplog.records if r.levelname == "CRITICAL")

    # the claim blocks a second payout
    assert make_settlement().process(payload).status == "duplicate"
    assert len(executor.calls) == 1


def test_ledger_and_review_both_down_logs_critical(make_settlement, ledger, executor, monkeypatch, caplog):
    def broken(*a, **kw):
        raise OSError("disk gone")

    monkeypatch.setattr(ledger, "record", broken)
    monkeypatch.setattr(ledger, "flag_for_review", broken)
    out = make_settlement().process(native_payload(buyer=BUYER))
    assert out.status == "needs_review"
    critical = [r.getMessage() for r in caplog.records if r.levelname == "CRITICAL"]
    assert any("MANUAL RECONCILIATION NEEDED" in m and "payout-sig-1" in m for m in critical)
