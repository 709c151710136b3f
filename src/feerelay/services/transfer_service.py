"""Transfer orchestrator.

Binds a quote to a signed authorization and drives the transfer through
its states::

    PENDING -> PROCESSING -> COMPLETED | FAILED
    PENDING -> FAILED        (authorization, binding or balance failure)
    PENDING -> CANCELLED     (caller cancellation before execution)

Execution is synchronous: ``create_transfer`` returns the terminal state,
except when confirmation timed out, in which case the transfer stays
PROCESSING with its tx hash recorded until reconciled.
"""

import logging
from dataclasses import dataclass
from functools import partial
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from eth_abi.exceptions import DecodingError
from eth_utils import is_hex_address, to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feerelay.auth.nonces import NonceRegistry
from feerelay.auth.schemas import AuthorizationKind, TypedDomain
from feerelay.auth.verifier import AuthorizationVerifier
from feerelay.chain.abi import Token
from feerelay.chain.kaia_tx import TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION, FeeDelegatedTransaction
from feerelay.chain.relay import RelayExecutor, RelayOutcome
from feerelay.chain.rpc import RPCError
from feerelay.errors import (
    ExecutionReverted,
    FeeRelayError,
    Indeterminate,
    InsufficientBalance,
    InvalidStateTransition,
    SubmissionRejected,
    TransactionMismatch,
    UpstreamUnavailable,
    ValidationError,
)
from feerelay.ledger.database import get_db
from feerelay.ledger.models import Transfer, TransferStatus
from feerelay.ledger.repository import TransferRepository
from feerelay.services.quote_service import QuoteEngine

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


@dataclass
class TransferRequest:
    """A caller's request to execute a quoted transfer."""

    quote_id: str
    sender: str
    recipient: str
    signature: str
    nonce: int
    deadline: int
    raw_transaction: Optional[str] = None


def normalize_address(value: str, field: str = "address") -> str:
    """Checksum an address or raise :class:`ValidationError`."""
    if not isinstance(value, str) or not is_hex_address(value):
        raise ValidationError(f"Invalid {field} address")
    return to_checksum_address(value)


def to_token_units(amount: Decimal, decimals: int) -> int:
    """Scale a decimal amount to integer token base units."""
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


class TransferService:
    """Creates, executes and tracks transfers."""

    def __init__(
        self,
        quotes: QuoteEngine,
        relay: Optional[RelayExecutor],
        rpc,
        token_address: str,
        token_decimals: int,
        domain: TypedDomain,
        verifier: Optional[AuthorizationVerifier] = None,
        nonces: Optional[NonceRegistry] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.quotes = quotes
        self.relay = relay
        self.rpc = rpc
        self.token_address = to_checksum_address(token_address)
        self.token_decimals = token_decimals
        self.domain = domain
        self.verifier = verifier or AuthorizationVerifier()
        self.nonces = nonces or NonceRegistry(session_factory)
        self._session_factory = session_factory

    def _db(self):
        return get_db(self._session_factory)

    # ------------------------------------------------------------------
    # Create and execute
    # ------------------------------------------------------------------

    async def create_transfer(self, request: TransferRequest) -> Transfer:
        """Bind a quote to an authorization and execute it.

        Raises (before any state is created):
            ValidationError: Malformed addresses or missing transaction.
            QuoteInvalid: Quote unknown, expired or already used.
            UpstreamUnavailable: No fee payer configured.

        Every later failure is recorded on the returned FAILED transfer.
        """
        if self.relay is None:
            raise UpstreamUnavailable("Fee payer is not configured")
        sender = normalize_address(request.sender, "sender")
        recipient = normalize_address(request.recipient, "recipient")
        if not request.raw_transaction:
            raise ValidationError("senderRawTransaction is required")

        validation = await self.quotes.validate_quote(request.quote_id)
        if not validation.valid:
            raise validation.error
        quote = validation.quote

        async with self._db() as session:
            transfer = await TransferRepository(session).create(
                quote_id=quote.id,
                sender_address=sender,
                recipient_address=recipient,
                from_currency=quote.from_currency,
                to_currency=quote.to_currency,
                from_amount=quote.from_amount,
                to_amount=quote.to_amount,
                exchange_rate=quote.exchange_rate,
                platform_fee=quote.platform_fee,
                total_cost=quote.total_cost,
            )
        transfer_id = transfer.id
        await self.quotes.invalidate_quote(quote.id)

        amount = to_token_units(quote.from_amount, self.token_decimals)
        try:
            authorization = self.verifier.verify(
                AuthorizationKind.TRANSFER,
                self.domain,
                {
                    "from": sender,
                    "to": recipient,
                    "amount": amount,
                    "nonce": request.nonce,
                    "deadline": request.deadline,
                },
                request.signature,
                sender,
            )
            await self.nonces.consume(authorization)
            self._bind(request.raw_transaction, sender, recipient, amount)

            balance = await self._token_balance(sender)
            if balance < amount:
                raise InsufficientBalance(
                    f"Sender balance {balance} is below the required {amount}"
                )
        except FeeRelayError as e:
            return await self._fail(transfer_id, e)

        try:
            await self._transition(transfer_id, TransferStatus.PROCESSING)
        except InvalidStateTransition:
            logger.info(f"Transfer {transfer_id} changed state before execution")
            return await self.get_transfer(transfer_id)

        try:
            outcome = await self.relay.submit(
                request.raw_transaction, on_broadcast=partial(self._record_broadcast, transfer_id)
            )
        except Indeterminate as e:
            return await self._mark_indeterminate(transfer_id, e)
        except FeeRelayError as e:
            return await self._fail(transfer_id, e)

        return await self._settle(transfer_id, outcome)

    def _bind(self, raw_transaction: str, sender: str, recipient: str, amount: int) -> FeeDelegatedTransaction:
        """Check the signed transaction performs exactly the authorized transfer."""
        try:
            tx = self.relay.decode(raw_transaction)
        except SubmissionRejected as e:
            raise TransactionMismatch(e.message)

        if tx.sender != sender:
            raise TransactionMismatch("Transaction sender does not match the authorization")
        if tx.tx_type != TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION or tx.to != self.token_address:
            raise TransactionMismatch("Transaction does not call the settlement token")
        if tx.value != 0:
            raise TransactionMismatch("Transaction must not carry native value")
        if tx.data != Token.transfer.encode(recipient, amount):
            raise TransactionMismatch("Transaction does not transfer the quoted amount to the recipient")
        return tx

    async def _token_balance(self, address: str) -> int:
        try:
            return await Token.balance_of.call(self.rpc, self.token_address, address)
        except (RPCError, DecodingError) as e:
            logger.error(f"Balance query for {address} failed: {e}")
            raise UpstreamUnavailable("Could not read sender balance")

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    async def _transition(self, transfer_id: str, status: TransferStatus, **fields) -> Transfer:
        async with self._db() as session:
            return await TransferRepository(session).transition(transfer_id, status, **fields)

    async def _fail(self, transfer_id: str, error: FeeRelayError) -> Transfer:
        logger.warning(f"Transfer {transfer_id} failed: {error.code} {error.message}")
        fields = {"error_code": error.code, "error": error.message}
        tx_hash = getattr(error, "tx_hash", None)
        if tx_hash:
            fields["tx_hash"] = tx_hash
        try:
            return await self._transition(transfer_id, TransferStatus.FAILED, **fields)
        except InvalidStateTransition:
            return await self.get_transfer(transfer_id)

    async def _record_broadcast(self, transfer_id: str, tx_hash: str) -> None:
        async with self._db() as session:
            await TransferRepository(session).annotate(transfer_id, tx_hash=tx_hash)

    async def _mark_indeterminate(self, transfer_id: str, error: Indeterminate) -> Transfer:
        logger.warning(f"Transfer {transfer_id} indeterminate, tx {error.tx_hash}")
        async with self._db() as session:
            return await TransferRepository(session).annotate(
                transfer_id, tx_hash=error.tx_hash, error_code=error.code, error=error.message
            )

    async def _settle(self, transfer_id: str, outcome: RelayOutcome) -> Transfer:
        if outcome.success:
            return await self._transition(
                transfer_id,
                TransferStatus.COMPLETED,
                tx_hash=outcome.tx_hash,
                block_number=outcome.block_number,
                gas_used=outcome.gas_used,
                error_code=None,
                error=None,
            )
        error = ExecutionReverted(outcome.failure_reason, tx_hash=outcome.tx_hash)
        return await self._transition(
            transfer_id,
            TransferStatus.FAILED,
            tx_hash=outcome.tx_hash,
            block_number=outcome.block_number,
            gas_used=outcome.gas_used,
            error_code=error.code,
            error=error.message,
        )

    # ------------------------------------------------------------------
    # Queries and lifecycle operations
    # ------------------------------------------------------------------

    async def get_transfer(self, transfer_id: str) -> Transfer:
        """Raises TransferNotFound for unknown ids."""
        async with self._db() as session:
            return await TransferRepository(session).get_or_raise(transfer_id)

    async def get_user_transfers(self, address: str, limit: int = 10) -> list[Transfer]:
        """Transfers sent or received by ``address``, newest first."""
        address = normalize_address(address)
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        async with self._db() as session:
            return await TransferRepository(session).list_for_address(address, limit)

    async def cancel_transfer(self, transfer_id: str, reason: Optional[str] = None) -> Transfer:
        """Cancel a PENDING transfer.

        Raises:
            TransferNotFound: Unknown id.
            InvalidStateTransition: The transfer already left PENDING.
        """
        transfer = await self._transition(
            transfer_id,
            TransferStatus.CANCELLED,
            error_code="CANCELLED",
            error=reason or "Cancelled by user",
        )
        logger.info(f"Transfer {transfer_id} cancelled")
        return transfer

    async def reconcile_transfer(self, transfer_id: str) -> Transfer:
        """Resolve a PROCESSING transfer by re-querying its receipt."""
        transfer = await self.get_transfer(transfer_id)
        if transfer.status != TransferStatus.PROCESSING.value or not transfer.tx_hash:
            return transfer
        if self.relay is None:
            raise UpstreamUnavailable("Fee payer is not configured")

        outcome = await self.relay.reconcile(transfer.tx_hash)
        if outcome is None:
            logger.info(f"Transfer {transfer_id} still unconfirmed ({transfer.tx_hash})")
            return transfer
        return await self._settle(transfer_id, outcome)

    async def list_processing(self) -> list[Transfer]:
        async with self._db() as session:
            return await TransferRepository(session).list_by_status(TransferStatus.PROCESSING)
