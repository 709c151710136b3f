"""Replay protection for signed authorizations.

Nonces are tracked per (signer, kind). A nonce is consumed only after the
signature verified, so a forged request cannot burn a user's nonce.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feerelay.auth.verifier import VerifiedAuthorization
from feerelay.ledger.database import get_db
from feerelay.ledger.repository import NonceRepository

logger = logging.getLogger(__name__)


class NonceRegistry:
    """Persisted used-nonce set."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def consume(self, authorization: VerifiedAuthorization) -> None:
        """Mark the authorization's nonce as used.

        Raises:
            NonceReused: If the nonce was already consumed.
        """
        async with get_db(self._session_factory) as session:
            await NonceRepository(session).consume(
                authorization.signer, authorization.kind.value, authorization.nonce
            )
        logger.debug(
            f"Consumed nonce {authorization.nonce} for {authorization.signer} "
            f"({authorization.kind.value})"
        )
