"""Repositories for transfers, used nonces and relayed operations."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from feerelay.errors import InvalidStateTransition, NonceReused, QuoteInvalid, TransferNotFound
from feerelay.ledger.models import (
    ALLOWED_TRANSITIONS,
    Operation,
    OperationStatus,
    Transfer,
    TransferStatus,
    UsedNonce,
)

logger = logging.getLogger(__name__)


class TransferRepository:
    """Persistence for transfers.

    Status changes go through :meth:`transition`, which enforces the
    allowed transitions with a compare-and-set update so two concurrent
    writers can never both move the same transfer.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> Transfer:
        """Insert a PENDING transfer.

        Raises:
            QuoteInvalid: If the quote is already bound to another transfer.
        """
        transfer = Transfer(status=TransferStatus.PENDING.value, **fields)
        self.session.add(transfer)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            raise QuoteInvalid("Quote has already been used")
        logger.info(f"Transfer {transfer.id} created for quote {transfer.quote_id}")
        return transfer

    async def get(self, transfer_id: str) -> Optional[Transfer]:
        stmt = (
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, transfer_id: str) -> Transfer:
        transfer = await self.get(transfer_id)
        if transfer is None:
            raise TransferNotFound(f"Transfer {transfer_id} not found")
        return transfer

    async def list_for_address(self, address: str, limit: int = 10) -> list[Transfer]:
        """Transfers where the address is sender or recipient, newest first."""
        stmt = (
            select(Transfer)
            .where(
                (Transfer.sender_address == address)
                | (Transfer.recipient_address == address)
            )
            .order_by(Transfer.created_at.desc(), Transfer.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, status: TransferStatus) -> list[Transfer]:
        stmt = select(Transfer).where(Transfer.status == status.value).order_by(Transfer.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        transfer_id: str,
        new_status: TransferStatus,
        **fields,
    ) -> Transfer:
        """Move a transfer to ``new_status`` and update extra fields.

        Raises:
            TransferNotFound: Unknown transfer.
            InvalidStateTransition: The current status does not allow the move,
                including when a concurrent writer got there first.
        """
        transfer = await self.get_or_raise(transfer_id)
        current = TransferStatus(transfer.status)

        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Cannot move transfer from {current.value} to {new_status.value}"
            )

        values = dict(fields)
        values["status"] = new_status.value
        values["updated_at"] = datetime.now(timezone.utc)
        if new_status == TransferStatus.COMPLETED:
            values.setdefault("completed_at", datetime.now(timezone.utc))

        stmt = (
            update(Transfer)
            .where(Transfer.id == transfer_id, Transfer.status == current.value)
            .values(**values)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise InvalidStateTransition(
                f"Transfer {transfer_id} changed state concurrently"
            )
        await self.session.flush()

        logger.info(f"Transfer {transfer_id}: {current.value} -> {new_status.value}")
        return await self.get_or_raise(transfer_id)

    async def annotate(self, transfer_id: str, **fields) -> Transfer:
        """Update non-status fields (e.g. record a tx hash while PROCESSING)."""
        transfer = await self.get_or_raise(transfer_id)
        if TransferStatus(transfer.status).is_terminal:
            raise InvalidStateTransition(f"Transfer {transfer_id} is final")
        for key, value in fields.items():
            setattr(transfer, key, value)
        await self.session.flush()
        return transfer


class NonceRepository:
    """Persisted set of used (signer, kind, nonce) triples."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def is_used(self, signer: str, kind: str, nonce: int) -> bool:
        stmt = select(UsedNonce.id).where(
            UsedNonce.signer == signer.lower(),
            UsedNonce.kind == kind,
            UsedNonce.nonce == str(nonce),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def consume(self, signer: str, kind: str, nonce: int) -> None:
        """Record a nonce as used.

        The unique constraint catches a concurrent duplicate that slips past
        the read; the session must then be rolled back by the caller.

        Raises:
            NonceReused: If the triple was recorded before.
        """
        if await self.is_used(signer, kind, nonce):
            logger.warning(f"Nonce reuse rejected: {signer} {kind} #{nonce}")
            raise NonceReused(f"Nonce {nonce} has already been used")

        self.session.add(UsedNonce(signer=signer.lower(), kind=kind, nonce=str(nonce)))
        try:
            await self.session.flush()
        except IntegrityError:
            logger.warning(f"Concurrent nonce reuse rejected: {signer} {kind} #{nonce}")
            raise NonceReused(f"Nonce {nonce} has already been used")


class OperationRepository:
    """Persistence for relayed DeFi and faucet operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, kind: str, user_address: str, target_address: str) -> Operation:
        operation = Operation(
            kind=kind,
            user_address=user_address,
            target_address=target_address,
            status=OperationStatus.PROCESSING.value,
        )
        self.session.add(operation)
        await self.session.flush()
        return operation

    async def get(self, operation_id: str) -> Optional[Operation]:
        stmt = select(Operation).where(Operation.id == operation_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def finish(self, operation_id: str, status: OperationStatus, **fields) -> Operation:
        operation = await self.get(operation_id)
        if operation is None:
            raise ValueError(f"Operation {operation_id} not found")
        operation.status = status.value
        for key, value in fields.items():
            setattr(operation, key, value)
        if status == OperationStatus.COMPLETED:
            operation.completed_at = datetime.now(timezone.utc)
        await self.session.flush()
        return operation

    async def annotate(self, operation_id: str, **fields) -> Operation:
        """Update fields without changing status (e.g. the tx hash once broadcast)."""
        operation = await self.get(operation_id)
        if operation is None:
            raise ValueError(f"Operation {operation_id} not found")
        for key, value in fields.items():
            setattr(operation, key, value)
        await self.session.flush()
        return operation

    async def list_for_user(self, user_address: str, limit: int = 20) -> list[Operation]:
        stmt = (
            select(Operation)
            .where(Operation.user_address == user_address)
            .order_by(Operation.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
