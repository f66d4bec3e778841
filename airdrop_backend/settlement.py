# settlement.py
"""
Webhook delivery -> at most one airdrop.

    normalize -> guard -> ledger fast-path -> rate (+ oracle) -> payout
      -> claim (unique source_tx_id) -> transfer -> record

The claim row is written before any transfer; a second delivery of the same
payment (indexer retry, duplicate send, concurrent request) fails the claim
insert and ends as a duplicate. A confirmed transfer whose settlement row
cannot be written is put on the review queue and keeps its claim, so it is
never paid twice.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from .airdrop_models import (
    IGNORE_INVALID_BUYER,
    IGNORE_ZERO_AMOUNT,
    IGNORE_ZERO_PAYOUT,
    STATUS_DUPLICATE,
    STATUS_FAILED,
    STATUS_IGNORED,
    STATUS_NEEDS_REVIEW,
    STATUS_RETRYABLE,
    STATUS_SETTLED,
    IgnoredEvent,
    PaidAsset,
    PaymentEvent,
    SettlementOutcome,
    SettlementRecord,
)
from .airdrop_store import CLAIM_FAILED, CLAIM_UNCONFIRMED, AirdropLedger
from .config import AirdropConfig
from .errors import (
    DuplicateSettlement,
    FatalTransferError,
    LedgerUnavailable,
    LedgerWriteError,
    RetryableTransferError,
    TransferUnconfirmed,
)
from .normalizer import normalize_payload
from .oracle import PriceOracle
from .pricing import compute_payout

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AirdropSettlement:
    def __init__(
        self,
        cfg: AirdropConfig,
        ledger: AirdropLedger,
        oracle: PriceOracle,
        executor: Any,
        now_func: Callable[[], datetime] = utc_now,
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.oracle = oracle
        self.executor = executor
        self.now_func = now_func

    # -- helpers -------------------------------------------------------------

    def _log_event(self, type: str, source_tx_id: Optional[str], **meta: Any) -> None:
        try:
            self.ledger.log_event(type, source_tx_id, meta)
        except Exception as e:
            logger.warning("[airdrop] failed to log %s event for %s: %s", type, source_tx_id, e)

    def _ignored(self, ig: IgnoredEvent) -> SettlementOutcome:
        logger.info("[airdrop] ignored (%s) tx=%s %s", ig.reason, ig.source_tx_id, ig.detail)
        self._log_event("ignored", ig.source_tx_id, reason=ig.reason, detail=ig.detail)
        return SettlementOutcome(STATUS_IGNORED, ig.source_tx_id, reason=ig.reason, detail=ig.detail)

    def _duplicate(self, source_tx_id: str) -> SettlementOutcome:
        logger.info("[airdrop] duplicate delivery for %s, skipping", source_tx_id)
        self._log_event("duplicate", source_tx_id)
        return SettlementOutcome(STATUS_DUPLICATE, source_tx_id, reason="already_settled")

    # -- flow ----------------------------------------------------------------

    def process(self, payload: Any) -> SettlementOutcome:
        """Run one webhook body through the flow. Raises InvalidPayload for a malformed body."""
        result = normalize_payload(payload, self.cfg, self.now_func())
        if isinstance(result, IgnoredEvent):
            return self._ignored(result)
        return self.settle(result)

    def settle(self, event: PaymentEvent) -> SettlementOutcome:
        tx_id = event.source_tx_id
        if not event.buyer_address:
            return self._ignored(IgnoredEvent(IGNORE_INVALID_BUYER, tx_id))
        if event.paid_amount <= 0:
            return self._ignored(IgnoredEvent(IGNORE_ZERO_AMOUNT, tx_id))

        logger.info(
            "[airdrop] buyer %s paid %s %s (tx=%s)",
            event.buyer_address, event.paid_amount, event.paid_asset.value, tx_id,
        )

        try:
            if self.ledger.has_settled(tx_id):
                return self._duplicate(tx_id)
        except LedgerUnavailable as e:
            logger.error("[airdrop] ledger unavailable for %s: %s", tx_id, e)
            return SettlementOutcome(STATUS_RETRYABLE, tx_id, reason="ledger_unavailable", detail=str(e))

        rate = self.cfg.schedule.resolve(event.observed_at)
        price: Optional[Decimal] = None
        price_is_fallback = False
        if event.paid_asset is PaidAsset.NATIVE:
            quote = self.oracle.fetch_native_usd_price()
            price, price_is_fallback = quote.price, quote.is_fallback

        payout = compute_payout(event, rate, price, self.cfg.token_decimals)
        if payout <= 0:
            return self._ignored(IgnoredEvent(IGNORE_ZERO_PAYOUT, tx_id, detail=f"rate={rate} price={price}"))

        try:
            self.ledger.claim(tx_id, event.buyer_address)
        except DuplicateSettlement:
            return self._duplicate(tx_id)
        except LedgerUnavailable as e:
            logger.error("[airdrop] cannot claim %s: %s", tx_id, e)
            return SettlementOutcome(STATUS_RETRYABLE, tx_id, reason="ledger_unavailable", detail=str(e))

        logger.info(
            "[airdrop] sending %s minor units to %s (rate=%s price=%s fallback=%s)",
            payout, event.buyer_address, rate, price, price_is_fallback,
        )
        try:
            payout_tx_id = self.executor.transfer(event.buyer_address, payout)
        except RetryableTransferError as e:
            logger.warning("[airdrop] retryable transfer failure for %s: %s", tx_id, e)
            self._release(tx_id)
            self._log_event("transfer_failed", tx_id, retryable=True, error=str(e))
            return SettlementOutcome(STATUS_RETRYABLE, tx_id, reason=type(e).__name__, detail=str(e))
        except FatalTransferError as e:
            logger.error("[airdrop] fatal transfer failure for %s: %s", tx_id, e)
            self._mark(tx_id, CLAIM_FAILED, str(e))
            self._log_event("transfer_failed", tx_id, retryable=False, error=str(e))
            return SettlementOutcome(STATUS_FAILED, tx_id, reason=type(e).__name__, detail=str(e))
        except TransferUnconfirmed as e:
            logger.error("[airdrop] transfer for %s unconfirmed (sig=%s): %s", tx_id, e.signature, e)
            self._mark(tx_id, CLAIM_UNCONFIRMED, str(e), payout_tx_id=e.signature)
            return self._needs_review(tx_id, "transfer_unconfirmed", e.signature, event, payout, str(e))
        except Exception as e:
            # unknown executor failure: the transfer may or may not have gone out
            logger.exception("[airdrop] unexpected transfer error for %s", tx_id)
            self._mark(tx_id, CLAIM_UNCONFIRMED, repr(e))
            return self._needs_review(tx_id, "transfer_error", None, event, payout, repr(e))

        record = SettlementRecord(
            source_tx_id=tx_id,
            buyer_address=event.buyer_address,
            paid_asset=event.paid_asset,
            paid_amount=event.paid_amount,
            rate_applied=rate,
            native_usd_price=price,
            price_is_fallback=price_is_fallback,
            payout_amount=payout,
            payout_tx_id=payout_tx_id,
            settled_at=self.now_func(),
        )
        try:
            self.record(record)
        except DuplicateSettlement:
            # another writer got the row in first; the claim guard makes this rare
            return self._duplicate(tx_id)
        except LedgerWriteError as e:
            return self._needs_review(tx_id, "ledger_write_failed", payout_tx_id, event, payout, str(e.cause))

        self._log_event("settled", tx_id, payout=payout, payout_tx_id=payout_tx_id, fallback=price_is_fallback)
        return SettlementOutcome(STATUS_SETTLED, tx_id, record=record)

    def record(self, rec: SettlementRecord) -> None:
        """Write the settlement row. Only called after the transfer is confirmed."""
        try:
            self.ledger.record(rec)
        except DuplicateSettlement:
            raise
        except Exception as e:
            raise LedgerWriteError(rec.source_tx_id, rec.payout_tx_id, e) from e

    def _release(self, tx_id: str) -> None:
        try:
            self.ledger.release_claim(tx_id)
        except Exception as e:
            # the claim stays; a redelivery will be skipped and must be cleared by hand
            logger.error("[airdrop] could not release claim for %s: %s", tx_id, e)

    def _mark(self, tx_id: str, status: str, error: str, payout_tx_id: Optional[str] = None) -> None:
        try:
            self.ledger.mark_claim(tx_id, status, error, payout_tx_id=payout_tx_id)
        except Exception as e:
            logger.error("[airdrop] could not mark claim %s as %s: %s", tx_id, status, e)

    def _needs_review(
        self,
        tx_id: str,
        reason: str,
        payout_tx_id: Optional[str],
        event: PaymentEvent,
        payout: int,
        error: str,
    ) -> SettlementOutcome:
        detail = {
            "buyer_address": event.buyer_address,
            "paid_asset": event.paid_asset.value,
            "paid_amount": str(event.paid_amount),
            "payout_amount": payout,
            "error": error,
        }
        try:
            self.ledger.flag_for_review(tx_id, reason, payout_tx_id=payout_tx_id, detail=detail)
        except Exception as e:
            logger.critical(
                "[airdrop] MANUAL RECONCILIATION NEEDED tx=%s payout_tx=%s reason=%s detail=%s (review queue write failed: %s)",
                tx_id, payout_tx_id, reason, detail, e,
            )
        else:
            logger.critical(
                "[airdrop] flagged for manual review tx=%s payout_tx=%s reason=%s",
                tx_id, payout_tx_id, reason,
            )
        return SettlementOutcome(STATUS_NEEDS_REVIEW, tx_id, reason=reason, detail=error)
