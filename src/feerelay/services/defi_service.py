"""Signed DeFi vault operations.

Each operation kind is described once in :data:`OPERATIONS`: which
contract it targets, which call the user's transaction must make, and
which event carries the resulting amount. Execution follows the same
verify -> consume nonce -> bind -> relay path as transfers; all position
math stays on-chain.
"""

import json
import logging
from dataclasses import dataclass
from functools import partial
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feerelay.auth.nonces import NonceRegistry
from feerelay.auth.schemas import AuthorizationKind, TypedDomain, get_schema
from feerelay.auth.verifier import AuthorizationVerifier
from feerelay.chain.abi import (
    PYT,
    AutoCompoundVault,
    ContractEvent,
    SYVault,
    YieldOrchestrator,
    YieldSet,
)
from feerelay.chain.kaia_tx import TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION
from feerelay.chain.relay import RelayExecutor
from feerelay.chain.rpc import RPCError
from feerelay.config import Settings
from feerelay.errors import (
    FeeRelayError,
    Indeterminate,
    SubmissionRejected,
    TransactionMismatch,
    UpstreamUnavailable,
    ValidationError,
)
from feerelay.ledger.database import get_db
from feerelay.ledger.models import OperationStatus
from feerelay.ledger.repository import OperationRepository
from feerelay.services.transfer_service import normalize_address
from feerelay.store import KeyValueStore

logger = logging.getLogger(__name__)

VAULT_INFO_KEY = "defi:sy:vault:info"
APY_DECIMALS = 2  # getAPY() returns basis points
ALLOCATION_TOTAL = 10000  # portfolio allocations are basis points


@dataclass(frozen=True)
class OperationPlan:
    """How one authorization kind maps onto a contract call."""

    kind: AuthorizationKind
    target: str  # Settings attribute holding the contract address
    build_call: Callable[[Mapping[str, Any]], bytes]
    # (message field, Settings attribute) pairs filled in server-side
    address_fields: tuple[tuple[str, str], ...] = ()
    result_event: Optional[ContractEvent] = None
    result_field: Optional[str] = None
    # Rejects malformed caller fields before the signature is checked
    validate: Optional[Callable[[Mapping[str, Any]], None]] = None



def _check_allocations(allocations: Any, field: str) -> list[int]:
    if not allocations:
        raise ValidationError(f"{field} must not be empty")
    try:
        values = [int(value) for value in allocations]
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be integers")
    if any(value < 0 for value in values):
        raise ValidationError(f"{field} must not be negative")
    if sum(values) != ALLOCATION_TOTAL:
        raise ValidationError(f"{field} must sum to {ALLOCATION_TOTAL} basis points (100%)")
    return values


def _validate_portfolio_create(fields: Mapping[str, Any]) -> None:
    allocations = _check_allocations(fields.get("allocations"), "allocations")
    if len(fields.get("assets") or []) != len(allocations):
        raise ValidationError("assets and allocations must have the same length")


def _validate_portfolio_rebalance(fields: Mapping[str, Any]) -> None:
    _check_allocations(fields.get("newAllocations"), "newAllocations")


K = AuthorizationKind

OPERATIONS: Mapping[AuthorizationKind, OperationPlan] = {
    K.VAULT_DEPOSIT: OperationPlan(
        K.VAULT_DEPOSIT, "sy_vault_address",
        lambda m: SYVault.deposit.encode(m["amount"], m["user"]),
        address_fields=(("vault", "sy_vault_address"),),
        result_event=SYVault.Deposit, result_field="shares",
    ),
    K.VAULT_WITHDRAW: OperationPlan(
        K.VAULT_WITHDRAW, "sy_vault_address",
        lambda m: SYVault.redeem.encode(m["shares"], m["user"], m["user"]),
        address_fields=(("vault", "sy_vault_address"),),
        result_event=SYVault.Withdraw, result_field="assets",
    ),
    K.YIELD_SPLIT: OperationPlan(
        K.YIELD_SPLIT, "orchestrator_address",
        lambda m: YieldOrchestrator.split_shares.encode(m["syShares"], m["user"]),
        address_fields=(("orchestrator", "orchestrator_address"),),
        result_event=YieldOrchestrator.SharesSplit, result_field="pytMinted",
    ),
    K.YIELD_RECOMBINE: OperationPlan(
        K.YIELD_RECOMBINE, "orchestrator_address",
        lambda m: YieldOrchestrator.recombine_tokens.encode(m["pytAmount"], m["user"]),
        address_fields=(("orchestrator", "orchestrator_address"),),
        result_event=YieldOrchestrator.TokensRecombined, result_field="syShares",
    ),
    K.YIELD_CLAIM: OperationPlan(
        K.YIELD_CLAIM, "pyt_address",
        lambda m: PYT.claim_yield.encode(),
        address_fields=(("token", "pyt_address"),),
        result_event=PYT.YieldClaimed, result_field="amount",
    ),
    K.YIELD_DISTRIBUTION: OperationPlan(
        K.YIELD_DISTRIBUTION, "sy_vault_address",
        lambda m: SYVault.distribute_yield.encode(),
        address_fields=(("orchestrator", "orchestrator_address"),),
    ),
    K.PORTFOLIO_CREATE: OperationPlan(
        K.PORTFOLIO_CREATE, "yield_set_address",
        lambda m: YieldSet.deposit.encode(m["totalAmount"], m["user"]),
        address_fields=(("yieldSet", "yield_set_address"),),
        result_event=YieldSet.Deposit, result_field="shares",
        validate=_validate_portfolio_create,
    ),
    K.PORTFOLIO_REDEEM: OperationPlan(
        K.PORTFOLIO_REDEEM, "yield_set_address",
        lambda m: YieldSet.redeem.encode(m["portfolioTokens"], m["user"], m["user"]),
        address_fields=(("yieldSet", "yield_set_address"),),
        result_event=YieldSet.Withdraw, result_field="assets",
    ),
    K.PORTFOLIO_REBALANCE: OperationPlan(
        K.PORTFOLIO_REBALANCE, "yield_set_address",
        lambda m: YieldSet.rebalance.encode(),
        address_fields=(("yieldSet", "yield_set_address"),),
        validate=_validate_portfolio_rebalance,
    ),
    K.AUTOCOMPOUND_DEPOSIT: OperationPlan(
        K.AUTOCOMPOUND_DEPOSIT, "autocompound_vault_address",
        lambda m: AutoCompoundVault.deposit.encode(m["amount"]),
        address_fields=(("vault", "autocompound_vault_address"),),
        result_event=AutoCompoundVault.Deposit, result_field="shares",
    ),
    K.AUTOCOMPOUND_WITHDRAW: OperationPlan(
        K.AUTOCOMPOUND_WITHDRAW, "autocompound_vault_address",
        lambda m: AutoCompoundVault.withdraw.encode(m["shares"]),
        address_fields=(("vault", "autocompound_vault_address"),),
        result_event=AutoCompoundVault.Withdraw, result_field="amount",
    ),
}

del K


async def record_broadcast(session_factory, operation_id: str, tx_hash: str) -> None:
    """Store the tx hash of an operation as soon as it is broadcast."""
    async with get_db(session_factory) as session:
        await OperationRepository(session).annotate(operation_id, tx_hash=tx_hash)


@dataclass
class OperationResult:
    operation_id: str
    kind: AuthorizationKind
    tx_hash: str
    block_number: Optional[int]
    gas_used: Optional[int]
    result_amount: Optional[int]

    def to_dict(self) -> dict:
        return {
            "operationId": self.operation_id,
            "kind": self.kind.value,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "resultAmount": str(self.result_amount) if self.result_amount is not None else None,
        }


class DefiService:
    """Executes signed vault operations and serves cached vault reads."""

    def __init__(
        self,
        settings: Settings,
        relay: Optional[RelayExecutor],
        rpc,
        store: KeyValueStore,
        verifier: Optional[AuthorizationVerifier] = None,
        nonces: Optional[NonceRegistry] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.settings = settings
        self.relay = relay
        self.rpc = rpc
        self.store = store
        self.verifier = verifier or AuthorizationVerifier()
        self.nonces = nonces or NonceRegistry(session_factory)
        self._session_factory = session_factory

    def target_address(self, kind: AuthorizationKind) -> str:
        return to_checksum_address(getattr(self.settings, OPERATIONS[kind].target))

    def domain_for(self, kind: AuthorizationKind) -> TypedDomain:
        """DeFi domains pin the verifying contract to the operation's target."""
        return TypedDomain(
            name=self.settings.domain_name,
            version=self.settings.domain_version,
            chain_id=self.settings.chain_id,
            verifying_contract=self.target_address(kind),
        )

    def build_message(self, kind: AuthorizationKind, user: Optional[str], fields: Mapping[str, Any]) -> dict:
        """Complete caller fields with the user and target addresses."""
        values = dict(fields)
        for name, attr in OPERATIONS[kind].address_fields:
            values[name] = to_checksum_address(getattr(self.settings, attr))
        if get_schema(kind).signer_field == "user":
            values["user"] = user
        return values

    async def execute(
        self,
        kind: AuthorizationKind,
        user: str,
        fields: Mapping[str, Any],
        signature: str,
        raw_transaction: str,
    ) -> OperationResult:
        """Verify, bind and relay one signed operation.

        Raises:
            ValidationError: Unknown operation or malformed input.
            AuthorizationError: Bad signature, expired, reused nonce or a
                transaction that does not match the authorization.
            ExecutionReverted: Included but reverted.
            Indeterminate: No receipt in time.
        """
        try:
            kind = AuthorizationKind(kind)
        except ValueError:
            raise ValidationError(f"Unsupported operation: {kind}")
        if kind not in OPERATIONS:
            raise ValidationError(f"Unsupported operation: {kind.value}")
        if self.relay is None:
            raise UpstreamUnavailable("Fee payer is not configured")

        user = normalize_address(user, "user")
        if not raw_transaction:
            raise ValidationError("senderRawTransaction is required")
        plan = OPERATIONS[kind]
        target = self.target_address(kind)
        if plan.validate is not None:
            plan.validate(fields)

        authorization = self.verifier.verify(
            kind, self.domain_for(kind), self.build_message(kind, user, fields), signature, user
        )
        await self.nonces.consume(authorization)
        self._bind(raw_transaction, user, target, plan.build_call(authorization.message))

        async with get_db(self._session_factory) as session:
            operation = await OperationRepository(session).create(kind.value, user, target)
        operation_id = operation.id

        try:
            outcome = await self.relay.submit(
                raw_transaction, on_broadcast=partial(record_broadcast, self._session_factory, operation_id)
            )
            outcome.raise_for_status()
        except Indeterminate as e:
            await self._finish(operation_id, OperationStatus.PROCESSING, e, tx_hash=e.tx_hash)
            raise
        except FeeRelayError as e:
            await self._finish(
                operation_id, OperationStatus.FAILED, e, tx_hash=getattr(e, "tx_hash", None)
            )
            raise

        result_amount = None
        if plan.result_event is not None:
            event = plan.result_event.find(outcome.logs, address=target)
            if event is not None:
                result_amount = int(event[plan.result_field])

        async with get_db(self._session_factory) as session:
            await OperationRepository(session).finish(
                operation_id,
                OperationStatus.COMPLETED,
                tx_hash=outcome.tx_hash,
                block_number=outcome.block_number,
                gas_used=outcome.gas_used,
                result_amount=str(result_amount) if result_amount is not None else None,
            )

        logger.info(f"{kind.value} for {user} completed: {outcome.tx_hash} -> {result_amount}")
        return OperationResult(
            operation_id=operation_id,
            kind=kind,
            tx_hash=outcome.tx_hash,
            block_number=outcome.block_number,
            gas_used=outcome.gas_used,
            result_amount=result_amount,
        )

    def _bind(self, raw_transaction: str, user: str, target: str, expected_data: bytes) -> None:
        try:
            tx = self.relay.decode(raw_transaction)
        except SubmissionRejected as e:
            raise TransactionMismatch(e.message)

        if tx.sender != user:
            raise TransactionMismatch("Transaction sender does not match the authorization")
        if tx.tx_type != TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION or tx.to != target:
            raise TransactionMismatch("Transaction does not call the authorized contract")
        if tx.data != expected_data:
            raise TransactionMismatch("Transaction call does not match the authorization")

    async def _finish(self, operation_id: str, status: OperationStatus, error: FeeRelayError, **fields):
        async with get_db(self._session_factory) as session:
            await OperationRepository(session).finish(
                operation_id, status, error_code=error.code, error=error.message, **fields
            )

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    async def vault_info(self) -> dict:
        """Total assets, supply and APY of the SY vault (cached)."""
        cached = await self.store.get(VAULT_INFO_KEY)
        if cached:
            return json.loads(cached)

        vault = to_checksum_address(self.settings.sy_vault_address)
        try:
            total_assets = await SYVault.total_assets.call(self.rpc, vault)
            total_supply = await SYVault.total_supply.call(self.rpc, vault)
            apy_bps = await SYVault.get_apy.call(self.rpc, vault)
        except (RPCError, DecodingError) as e:
            logger.error(f"Vault info query failed: {e}")
            raise UpstreamUnavailable("Could not read vault state")

        info = {
            "address": vault,
            "totalAssets": str(total_assets),
            "totalSupply": str(total_supply),
            "apy": str(Decimal(apy_bps).scaleb(-APY_DECIMALS)),
        }
        await self.store.set(VAULT_INFO_KEY, json.dumps(info), ttl=self.settings.vault_info_ttl)
        return info

    async def vault_balance(self, user: str) -> dict:
        """A user's SY shares and their current asset value."""
        user = normalize_address(user, "user")
        vault = to_checksum_address(self.settings.sy_vault_address)
        try:
            shares = await SYVault.balance_of.call(self.rpc, vault, user)
            assets = await SYVault.convert_to_assets.call(self.rpc, vault, shares) if shares else 0
        except (RPCError, DecodingError) as e:
            logger.error(f"Vault balance query for {user} failed: {e}")
            raise UpstreamUnavailable("Could not read vault balance")
        return {"address": user, "shares": str(shares), "assets": str(assets)}
