"""Relay executor: co-signs user transactions as fee payer and settles them.

Outcome classification follows the receipt, not the submission:

- node fails before anything is sent -> UpstreamUnavailable (raised)
- node rejects before inclusion      -> SubmissionRejected (raised)
- receipt status 0                   -> RelayOutcome(success=False, reason)
- receipt status 1                   -> RelayOutcome(success=True)
- no receipt within the time bound   -> Indeterminate (raised, carries tx hash)

Reverted and successful executions are terminal and never retried.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

from eth_account import Account
from eth_utils import to_checksum_address
from web3 import Web3

from feerelay.chain.abi import decode_revert_reason, reason_from_message, to_raw_bytes
from feerelay.chain.kaia_tx import FeeDelegatedTransaction, TransactionDecodeError
from feerelay.chain.rpc import RPCError, to_int
from feerelay.chain.submission import NonceTracker, SubmissionQueue
from feerelay.errors import ExecutionReverted, Indeterminate, SubmissionRejected, UpstreamUnavailable

logger = logging.getLogger(__name__)

DEFAULT_REVERT_REASON = "Transaction reverted on-chain"

# Called with the tx hash once the node accepted the transaction
OnBroadcast = Callable[[str], Awaitable[None]]


@dataclass
class RelayOutcome:
    """Result of one execution attempt."""

    success: bool
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    failure_reason: Optional[str] = None
    logs: list[dict] = field(default_factory=list)

    def raise_for_status(self) -> "RelayOutcome":
        if not self.success:
            raise ExecutionReverted(self.failure_reason or DEFAULT_REVERT_REASON, tx_hash=self.tx_hash)
        return self


@dataclass
class FeePayerHealth:
    address: str
    balance: Decimal
    low_balance: bool
    threshold: Decimal

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balance": str(self.balance),
            "low_balance": self.low_balance,
            "threshold": str(self.threshold),
        }


class RelayExecutor:
    """Submits transactions through the platform's fee-paying identity."""

    def __init__(
        self,
        rpc,
        fee_payer_key: Union[str, bytes],
        chain_id: int,
        confirmations: int = 1,
        receipt_timeout: float = 60.0,
        poll_interval: float = 1.0,
        low_balance_threshold: Decimal = Decimal("1"),
        lock_timeout: Optional[float] = 30.0,
        gas_limit: int = 200000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc = rpc
        self.chain_id = chain_id
        self.confirmations = max(confirmations, 1)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.low_balance_threshold = low_balance_threshold
        self.lock_timeout = lock_timeout
        self.gas_limit = gas_limit
        self._clock = clock
        self._account = Account.from_key(fee_payer_key)
        self._nonces = NonceTracker(rpc, self._account.address)

    @property
    def address(self) -> str:
        return self._account.address

    # ------------------------------------------------------------------
    # Fee-delegated submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        raw_transaction: Union[bytes, str],
        on_broadcast: Optional[OnBroadcast] = None,
    ) -> RelayOutcome:
        """Co-sign a user-signed fee-delegated transaction, send it, and wait
        for its receipt.

        ``on_broadcast`` runs with the tx hash as soon as the node accepts the
        transaction, before waiting for the receipt.

        Raises:
            SubmissionRejected: Malformed transaction, bad sender signature,
                fee payer cannot cover gas, or the node refused it.
            UpstreamUnavailable: The node failed before anything was sent.
            Indeterminate: Broadcast but no receipt within the time bound.
            LockTimeout: The fee payer is busy.
        """
        tx = self.decode(raw_transaction)

        async with SubmissionQueue(self.address, self.lock_timeout, operation=tx.type_name):
            await self._ensure_fee_coverage(tx.max_fee)
            tx.sign_as_fee_payer(self._account.key, self.chain_id)
            tx_hash = await self._broadcast(tx.encode(), tx.tx_hash)

        logger.info(f"Relayed {tx.type_name} from {tx.sender}: {tx_hash}")
        if on_broadcast is not None:
            await on_broadcast(tx_hash)
        call = {
            "from": tx.sender,
            "to": tx.to,
            "data": "0x" + tx.data.hex(),
            "value": hex(tx.value),
        }
        return await self.wait_for_outcome(tx_hash, call)

    def decode(self, raw_transaction: Union[bytes, str]) -> FeeDelegatedTransaction:
        """Decode and check the sender signature of a user transaction.

        Raises:
            SubmissionRejected: If the transaction is malformed or its
                signature does not recover to its ``from`` field.
        """
        try:
            tx = FeeDelegatedTransaction.decode(raw_transaction)
            senders = tx.recover_senders(self.chain_id)
        except TransactionDecodeError as e:
            raise SubmissionRejected(f"Malformed transaction: {e}")

        if not senders or any(s.lower() != tx.sender.lower() for s in senders):
            raise SubmissionRejected("Transaction is not signed by its sender")
        return tx

    async def _broadcast(self, raw: bytes, local_hash: str) -> str:
        try:
            tx_hash = await self.rpc.send_raw_transaction(raw)
        except RPCError as e:
            logger.warning(f"Node rejected transaction {local_hash}: {e.message}")
            raise SubmissionRejected(f"Transaction rejected: {e.message}")
        except UpstreamUnavailable:
            # The node may have received it; only a receipt query can tell
            logger.error(f"Broadcast of {local_hash} interrupted, outcome unknown")
            raise Indeterminate("Broadcast interrupted, status unknown", tx_hash=local_hash)
        return tx_hash or local_hash

    async def _fee_payer_balance(self) -> int:
        try:
            return await self.rpc.get_balance(self.address)
        except RPCError as e:
            logger.error(f"Balance query for fee payer {self.address} failed: {e.message}")
            raise UpstreamUnavailable("Could not read fee payer balance")

    async def _ensure_fee_coverage(self, max_fee: int) -> None:
        balance = await self._fee_payer_balance()
        self._warn_if_low(balance)
        if balance < max_fee:
            logger.error(f"Fee payer {self.address} cannot cover {max_fee} (balance {balance})")
            raise SubmissionRejected("Fee payer balance too low to cover gas")

    # ------------------------------------------------------------------
    # Fee payer's own transactions
    # ------------------------------------------------------------------

    async def send_as_fee_payer(
        self,
        to: str,
        data: Union[bytes, str],
        gas: Optional[int] = None,
        attempts: int = 2,
        on_broadcast: Optional[OnBroadcast] = None,
    ) -> RelayOutcome:
        """Send a call from the fee payer's own account and wait for it.

        A rejection before inclusion is retried with a fresh nonce and gas
        price, up to ``attempts`` sends.

        Raises:
            SubmissionRejected: Every attempt was rejected.
            UpstreamUnavailable: The node failed before anything was sent.
            Indeterminate: Broadcast but no receipt within the time bound.
        """
        data_hex = "0x" + to_raw_bytes(data).hex()
        to = to_checksum_address(to)
        gas = gas or self.gas_limit
        last_error = ""

        for attempt in range(attempts):
            async with SubmissionQueue(self.address, self.lock_timeout, operation="fee-payer-call"):
                try:
                    gas_price = await self.rpc.gas_price()
                    await self._ensure_fee_coverage(gas * gas_price)
                    nonce = await self._nonces.next_nonce()
                except RPCError as e:
                    logger.error(f"Could not prepare fee payer call: {e.message}")
                    raise UpstreamUnavailable("Could not prepare fee payer transaction")

                signed = self._account.sign_transaction({
                    "to": to,
                    "value": 0,
                    "gas": gas,
                    "gasPrice": gas_price,
                    "nonce": nonce,
                    "chainId": self.chain_id,
                    "data": data_hex,
                })
                raw = signed.raw_transaction
                local_hash = "0x" + bytes(signed.hash).hex()

                try:
                    tx_hash = await self._broadcast(bytes(raw), local_hash)
                except SubmissionRejected as e:
                    self._nonces.reset()
                    last_error = e.message
                    logger.warning(f"Fee payer call rejected (attempt {attempt + 1}): {e.message}")
                    continue

            logger.info(f"Fee payer call to {to}: {tx_hash}")
            if on_broadcast is not None:
                await on_broadcast(tx_hash)
            return await self.wait_for_outcome(
                tx_hash, {"from": self.address, "to": to, "data": data_hex}
            )

        raise SubmissionRejected(last_error or "Transaction rejected")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def wait_for_outcome(self, tx_hash: str, call: dict) -> RelayOutcome:
        """Poll for the receipt until it has enough confirmations.

        Node errors while polling are retried until the time bound.

        Raises:
            Indeterminate: No confirmed receipt within ``receipt_timeout``.
        """
        deadline = self._clock() + self.receipt_timeout

        while True:
            try:
                receipt = await self.rpc.get_transaction_receipt(tx_hash)
                if receipt is not None:
                    tx_block = to_int(receipt.get("blockNumber"))
                    head = await self.rpc.block_number()
                    if head - tx_block + 1 >= self.confirmations:
                        return await self._classify(tx_hash, receipt, call)
            except (RPCError, UpstreamUnavailable) as e:
                logger.warning(f"Receipt query for {tx_hash} failed, retrying: {e}")

            if self._clock() >= deadline:
                logger.warning(f"No receipt for {tx_hash} after {self.receipt_timeout}s")
                raise Indeterminate(
                    "Transaction not confirmed in time; query its status later", tx_hash=tx_hash
                )
            await asyncio.sleep(self.poll_interval)

    async def _classify(self, tx_hash: str, receipt: dict, call: Optional[dict]) -> RelayOutcome:
        block_number = to_int(receipt.get("blockNumber"))
        outcome = RelayOutcome(
            success=to_int(receipt.get("status")) == 1,
            tx_hash=tx_hash,
            block_number=block_number,
            gas_used=to_int(receipt.get("gasUsed")),
            logs=list(receipt.get("logs") or []),
        )
        if outcome.success:
            logger.info(f"Transaction {tx_hash} confirmed in block {block_number}")
            return outcome

        outcome.failure_reason = await self._revert_reason(call, block_number)
        logger.warning(f"Transaction {tx_hash} reverted: {outcome.failure_reason}")
        return outcome

    async def _revert_reason(self, call: Optional[dict], block_number: Optional[int]) -> str:
        """Re-simulate the call against the state just before its block."""
        if not call or not call.get("to"):
            return DEFAULT_REVERT_REASON

        block = hex(block_number - 1) if block_number else "latest"
        try:
            await self.rpc.call(call, block)
        except RPCError as e:
            return (
                decode_revert_reason(e.data)
                or reason_from_message(e.message)
                or DEFAULT_REVERT_REASON
            )
        except UpstreamUnavailable:
            logger.warning("Revert simulation unavailable")
        return DEFAULT_REVERT_REASON

    async def reconcile(self, tx_hash: str) -> Optional[RelayOutcome]:
        """Re-query a transaction whose outcome was indeterminate.

        Returns None while it is still unconfirmed.

        Raises:
            UpstreamUnavailable: The node could not be queried.
        """
        try:
            receipt = await self.rpc.get_transaction_receipt(tx_hash)
            if receipt is None:
                return None
            if await self.rpc.block_number() - to_int(receipt.get("blockNumber")) + 1 < self.confirmations:
                return None
            tx = await self.rpc.get_transaction(tx_hash)
        except RPCError as e:
            logger.error(f"Reconcile query for {tx_hash} failed: {e.message}")
            raise UpstreamUnavailable("Could not query transaction status")

        call = None
        if tx:
            call = {"from": tx.get("from"), "to": tx.get("to"), "data": tx.get("input", "0x")}
        return await self._classify(tx_hash, receipt, call)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _warn_if_low(self, balance_wei: int) -> Decimal:
        balance = Decimal(Web3.from_wei(balance_wei, "ether"))
        if balance < self.low_balance_threshold:
            logger.warning(
                f"Fee payer {self.address} balance low: {balance} (threshold {self.low_balance_threshold})"
            )
        return balance

    async def health(self) -> FeePayerHealth:
        """Fee payer balance in native units and the low-balance flag."""
        balance = self._warn_if_low(await self._fee_payer_balance())
        return FeePayerHealth(
            address=self.address,
            balance=balance,
            low_balance=balance < self.low_balance_threshold,
            threshold=self.low_balance_threshold,
        )
