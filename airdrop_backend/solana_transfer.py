# solana_transfer.py
"""
SPL token payouts from the airdrop source wallet.

One transfer = one transaction:
  [create buyer's associated token account (idempotent), if missing]
  transfer_checked(source ATA -> buyer ATA, amount, decimals)

The destination account is created in the same transaction, funded by the
source wallet. Buyers who never held ABC have no token account, and a bare
transfer to them fails.

Confirmation is polled here rather than left to the RPC client: a landed tx
can still carry an execution error, and once the tx is broadcast no error may
be read as "never sent".
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, List, Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from .config import AirdropConfig
from .errors import (
    ConfigError,
    InsufficientSourceBalance,
    InvalidAddress,
    NetworkTimeout,
    TransferRejected,
    TransferUnconfirmed,
)

logger = logging.getLogger(__name__)

SOLSCAN_TX_URL = "https://solscan.io/tx/{sig}"


def load_keypair(secret: str) -> Keypair:
    """Accept either a JSON byte array (solana-keygen file format) or a base58 string."""
    secret = (secret or "").strip()
    if not secret:
        raise ConfigError("AIRDROP_SECRET_KEY is not set")
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_base58_string(secret)
    except (ValueError, TypeError) as e:
        raise ConfigError(f"AIRDROP_SECRET_KEY is not a valid keypair: {e}")


def parse_owner(address: str) -> Pubkey:
    try:
        owner = Pubkey.from_string(str(address).strip())
    except ValueError:
        raise InvalidAddress(f"not a base58 public key: {address!r}")
    if not owner.is_on_curve():
        raise InvalidAddress(f"address is off-curve and cannot own a token account: {address}")
    return owner


CONFIRMED_LEVELS = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


class SolanaTokenTransfer:
    def __init__(
        self,
        client: Any,
        keypair: Keypair,
        mint: Pubkey,
        decimals: int,
        confirm_timeout_sec: float = 90.0,
        poll_interval_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.keypair = keypair
        self.mint = mint
        self.decimals = decimals
        self.confirm_timeout_sec = confirm_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.sleep = sleep
        self.source_owner = keypair.pubkey()
        self.source_ata = get_associated_token_address(self.source_owner, mint)

    def _account_exists(self, address: Pubkey) -> bool:
        return self.client.get_account_info(address, commitment=Confirmed).value is not None

    def _source_balance(self) -> int:
        if not self._account_exists(self.source_ata):
            return 0
        resp = self.client.get_token_account_balance(self.source_ata, commitment=Confirmed)
        return int(resp.value.amount)

    def build_instructions(self, owner: Pubkey, dest_ata: Pubkey, amount: int, create_dest: bool) -> List[Instruction]:
        ixs: List[Instruction] = []
        if create_dest:
            ixs.append(
                create_idempotent_associated_token_account(
                    payer=self.source_owner,
                    owner=owner,
                    mint=self.mint,
                )
            )
        ixs.append(
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=self.source_ata,
                    mint=self.mint,
                    dest=dest_ata,
                    owner=self.source_owner,
                    amount=amount,
                    decimals=self.decimals,
                )
            )
        )
        return ixs

    def _status(self, sig: Signature, search_history: bool = False) -> Any:
        resp = self.client.get_signature_statuses([sig], search_transaction_history=search_history)
        return resp.value[0]

    @staticmethod
    def _is_confirmed(sig: Signature, status: Any) -> bool:
        """True for a clean confirmed status. A confirmed status with an error failed on chain."""
        if status is None or status.confirmation_status not in CONFIRMED_LEVELS:
            return False
        if status.err is not None:
            raise TransferRejected(f"transfer {sig} failed on chain: {status.err}")
        return True

    def confirm(self, sig: Signature, last_valid_block_height: int) -> None:
        """
        Poll until the tx is confirmed, its blockhash expires, or the timeout
        passes. Only an expired blockhash with no trace of the tx is retryable.
        """
        deadline = time.monotonic() + self.confirm_timeout_sec
        try:
            while True:
                if self._is_confirmed(sig, self._status(sig)):
                    return
                if self.client.get_block_height(commitment=Confirmed).value > last_valid_block_height:
                    status = self._status(sig, search_history=True)
                    if status is None:
                        raise NetworkTimeout(f"blockhash expired before {sig} landed")
                    if self._is_confirmed(sig, status):
                        return
                    raise TransferUnconfirmed(
                        f"transfer {sig} is {status.confirmation_status} but its blockhash expired",
                        signature=str(sig),
                    )
                if time.monotonic() >= deadline:
                    raise TransferUnconfirmed(
                        f"transfer {sig} not confirmed after {self.confirm_timeout_sec}s", signature=str(sig)
                    )
                self.sleep(self.poll_interval_sec)
        except (SolanaRpcException, RPCException) as e:
            raise TransferUnconfirmed(f"transfer {sig} sent but its status is unknown: {e}", signature=str(sig)) from e

    def transfer(self, buyer_address: str, amount: int) -> str:
        """Send `amount` minor units to the buyer and wait for confirmation. Returns the signature."""
        if amount <= 0:
            raise TransferRejected(f"refusing to transfer non-positive amount {amount}")
        owner = parse_owner(buyer_address)
        dest_ata = get_associated_token_address(owner, self.mint)

        # Nothing has been broadcast until send_raw_transaction, so any RPC
        # trouble up to that point is safe to retry.
        try:
            balance = self._source_balance()
            if balance < amount:
                raise InsufficientSourceBalance(
                    f"source {self.source_ata} holds {balance}, payout needs {amount}"
                )
            create_dest = not self._account_exists(dest_ata)
            latest = self.client.get_latest_blockhash(commitment=Confirmed).value
        except (SolanaRpcException, RPCException) as e:
            raise NetworkTimeout(f"rpc unavailable before broadcast: {e}") from e

        ixs = self.build_instructions(owner, dest_ata, amount, create_dest)
        tx = Transaction.new_signed_with_payer(ixs, self.source_owner, [self.keypair], latest.blockhash)
        sig = tx.signatures[0]
        if create_dest:
            logger.info("[transfer] creating token account %s for %s", dest_ata, owner)

        opts = TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
        try:
            self.client.send_raw_transaction(bytes(tx), opts=opts)
        except RPCException as e:
            # Preflight simulation rejected it; the cluster never accepted the tx.
            msg = str(e)
            if "insufficient" in msg.lower():
                raise InsufficientSourceBalance(msg) from e
            raise TransferRejected(msg) from e
        except SolanaRpcException as e:
            # The request may or may not have reached the node; the status poll decides.
            logger.warning("[transfer] send of %s failed, polling its status: %s", sig, e)

        self.confirm(sig, latest.last_valid_block_height)
        logger.info("[transfer] sent %s minor units to %s: %s", amount, owner, SOLSCAN_TX_URL.format(sig=sig))
        return str(sig)


def build_executor(cfg: AirdropConfig, client: Optional[Any] = None) -> SolanaTokenTransfer:
    keypair = load_keypair(cfg.source_secret)
    if str(keypair.pubkey()) != cfg.source_wallet:
        raise ConfigError("AIRDROP_SECRET_KEY does not match AIRDROP_SOURCE_WALLET")
    try:
        mint = Pubkey.from_string(cfg.token_mint)
    except ValueError:
        raise ConfigError(f"TOKEN_MINT is not a valid public key: {cfg.token_mint!r}")
    if client is None:
        client = Client(cfg.rpc_url, commitment=Confirmed, timeout=cfg.rpc_timeout_sec)
    return SolanaTokenTransfer(client, keypair, mint, cfg.token_decimals, confirm_timeout_sec=cfg.confirm_timeout_sec)
