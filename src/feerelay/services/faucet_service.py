"""Test-token faucet.

The user signs a FaucetClaim; the fee payer mints directly to them from
its own account, so the user needs neither gas nor a signed transaction.
"""

import logging
from decimal import Decimal
from functools import partial
from typing import Optional

from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feerelay.auth.nonces import NonceRegistry
from feerelay.auth.schemas import AuthorizationKind, TypedDomain
from feerelay.auth.verifier import AuthorizationVerifier
from feerelay.chain.abi import Token
from feerelay.chain.relay import RelayExecutor
from feerelay.chain.rpc import RPCError
from feerelay.errors import (
    FeeRelayError,
    Indeterminate,
    UpstreamUnavailable,
    ValidationError,
)
from feerelay.ledger.database import get_db
from feerelay.ledger.models import OperationStatus
from feerelay.ledger.repository import OperationRepository
from feerelay.services.defi_service import OperationResult, record_broadcast
from feerelay.services.transfer_service import normalize_address, to_token_units

logger = logging.getLogger(__name__)


class FaucetService:
    def __init__(
        self,
        relay: Optional[RelayExecutor],
        rpc,
        token_address: str,
        token_decimals: int,
        faucet_amount: Decimal,
        domain: TypedDomain,
        verifier: Optional[AuthorizationVerifier] = None,
        nonces: Optional[NonceRegistry] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.relay = relay
        self.rpc = rpc
        self.token_address = to_checksum_address(token_address)
        self.amount_units = to_token_units(faucet_amount, token_decimals)
        self.domain = domain
        self.verifier = verifier or AuthorizationVerifier()
        self.nonces = nonces or NonceRegistry(session_factory)
        self._session_factory = session_factory

    async def claim(
        self,
        user: str,
        amount: int,
        nonce: int,
        deadline: int,
        signature: str,
    ) -> OperationResult:
        """Mint the faucet amount to ``user``.

        Raises:
            ValidationError: Wrong amount or faucet cooldown still active.
            AuthorizationError: Bad signature, expired or reused nonce.
            ExecutionReverted / SubmissionRejected / Indeterminate: Mint failed.
        """
        if self.relay is None:
            raise UpstreamUnavailable("Fee payer is not configured")
        user = normalize_address(user, "user")
        if int(amount) != self.amount_units:
            raise ValidationError(f"Faucet amount must be {self.amount_units}")

        authorization = self.verifier.verify(
            AuthorizationKind.FAUCET_CLAIM,
            self.domain,
            {"user": user, "amount": amount, "nonce": nonce, "deadline": deadline},
            signature,
            user,
        )

        if not await self._can_use_faucet(user):
            raise ValidationError("Faucet cooldown is still active for this address")
        await self.nonces.consume(authorization)

        async with get_db(self._session_factory) as session:
            operation = await OperationRepository(session).create(
                AuthorizationKind.FAUCET_CLAIM.value, user, self.token_address
            )
        operation_id = operation.id

        try:
            outcome = await self.relay.send_as_fee_payer(
                self.token_address,
                Token.mint.encode(user, self.amount_units),
                on_broadcast=partial(record_broadcast, self._session_factory, operation_id),
            )
            outcome.raise_for_status()
        except FeeRelayError as e:
            status = OperationStatus.PROCESSING if isinstance(e, Indeterminate) else OperationStatus.FAILED
            async with get_db(self._session_factory) as session:
                await OperationRepository(session).finish(
                    operation_id,
                    status,
                    tx_hash=getattr(e, "tx_hash", None),
                    error_code=e.code,
                    error=e.message,
                )
            raise

        async with get_db(self._session_factory) as session:
            await OperationRepository(session).finish(
                operation_id,
                OperationStatus.COMPLETED,
                tx_hash=outcome.tx_hash,
                block_number=outcome.block_number,
                gas_used=outcome.gas_used,
                result_amount=str(self.amount_units),
            )

        logger.info(f"Faucet minted {self.amount_units} to {user}: {outcome.tx_hash}")
        return OperationResult(
            operation_id=operation_id,
            kind=AuthorizationKind.FAUCET_CLAIM,
            tx_hash=outcome.tx_hash,
            block_number=outcome.block_number,
            gas_used=outcome.gas_used,
            result_amount=self.amount_units,
        )

    async def _can_use_faucet(self, user: str) -> bool:
        try:
            return await Token.can_use_faucet.call(self.rpc, self.token_address, user)
        except (RPCError, DecodingError) as e:
            logger.error(f"Faucet cooldown query for {user} failed: {e}")
            raise UpstreamUnavailable("Could not read faucet status")
