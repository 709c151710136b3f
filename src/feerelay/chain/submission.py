"""Serialized access to the fee payer identity.

Two submissions from the same fee payer must not interleave: they race
on its nonce and its balance. Every broadcast goes through
:class:`SubmissionQueue`, a per-fee-payer lock with a timeout.
"""

import asyncio
import logging
from typing import Optional

from feerelay.errors import LockTimeout

logger = logging.getLogger(__name__)

# Global lock registry: fee payer address (lowercase) -> asyncio.Lock
_payer_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


async def get_payer_lock(address: str) -> asyncio.Lock:
    """Get or create the lock for a fee payer address."""
    key = address.lower()
    async with _registry_lock:
        if key not in _payer_locks:
            _payer_locks[key] = asyncio.Lock()
        return _payer_locks[key]


class SubmissionQueue:
    """Context manager granting exclusive use of a fee payer.

    Example:
        async with SubmissionQueue(fee_payer, operation="transfer"):
            nonce = await nonces.next_nonce()
            await rpc.send_raw_transaction(raw)
    """

    def __init__(
        self,
        address: str,
        timeout: Optional[float] = 30.0,
        operation: str = "submission",
    ):
        self.address = address
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "SubmissionQueue":
        self._lock = await get_payer_lock(self.address)

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
            logger.debug(f"Submission slot acquired for {self.address}: {self.operation}")
            return self

        except asyncio.TimeoutError:
            logger.warning(
                f"Submission queue timeout for {self.address} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeout("Fee payer busy, try again shortly")

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Submission slot released for {self.address}: {self.operation}")
        return False


class NonceTracker:
    """Next-nonce cache for the fee payer's own transactions.

    Uses the higher of the node's pending count and the locally cached
    value, so back-to-back sends inside the queue never reuse a nonce.
    Must only be used while holding the :class:`SubmissionQueue`.
    """

    def __init__(self, rpc, address: str):
        self.rpc = rpc
        self.address = address
        self._cached: Optional[int] = None

    async def next_nonce(self) -> int:
        chain_nonce = await self.rpc.get_transaction_count(self.address, "pending")
        nonce = max(chain_nonce, self._cached or 0)
        self._cached = nonce + 1
        return nonce

    def reset(self) -> None:
        """Drop the cache (after a rejected send)."""
        self._cached = None


def clear_payer_locks() -> None:
    """Clear all fee payer locks (useful for testing)."""
    _payer_locks.clear()
