# errors.py
from typing import Optional


class AirdropError(Exception):
    """Base class for everything the airdrop flow raises on purpose."""


class ConfigError(AirdropError):
    pass


class InvalidPayload(AirdropError):
    """Webhook body is not the JSON shape the indexer sends (HTTP 400)."""


class DuplicateSettlement(AirdropError):
    """The source transaction was already claimed or settled."""

    def __init__(self, source_tx_id: str):
        super().__init__(f"source tx {source_tx_id} already claimed")
        self.source_tx_id = source_tx_id


class OracleUnavailable(AirdropError):
    pass


class LedgerUnavailable(AirdropError):
    """The ledger could not be read or locked in time. Nothing was transferred."""


class LedgerWriteError(AirdropError):
    """A settlement row could not be written after a confirmed transfer."""

    def __init__(self, source_tx_id: str, payout_tx_id: str, cause: Exception):
        super().__init__(f"failed to record {source_tx_id} (payout {payout_tx_id}): {cause!r}")
        self.source_tx_id = source_tx_id
        self.payout_tx_id = payout_tx_id
        self.cause = cause


# ---------------------------
# Transfer errors
# ---------------------------
class TransferError(AirdropError):
    retryable = False


class RetryableTransferError(TransferError):
    """Nothing reached the chain; the same delivery may be retried."""

    retryable = True


class NetworkTimeout(RetryableTransferError):
    pass


class FatalTransferError(TransferError):
    pass


class InsufficientSourceBalance(FatalTransferError):
    pass


class InvalidAddress(FatalTransferError):
    pass


class TransferRejected(FatalTransferError):
    pass


class TransferUnconfirmed(TransferError):
    """Broadcast happened but confirmation is unknown; only a human may retry."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature
