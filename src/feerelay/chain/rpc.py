"""JSON-RPC client for the Kaia ledger.

Kaia serves the Ethereum-compatible API under the ``kaia_`` namespace
(``eth_`` also works); the namespace is configurable. Read-only calls
are retried with backoff. ``sendRawTransaction`` is never retried since a
request that timed out may still have reached the node.
"""

import asyncio
import itertools
import logging
from typing import Any, Optional, Union

import httpx

from feerelay.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class RPCError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {code}: {message}")


def to_int(value: Union[int, str, None]) -> Optional[int]:
    """Parse a quantity that may be hex-encoded."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


class LedgerRPC:
    """Async JSON-RPC client over httpx."""

    def __init__(
        self,
        url: str,
        namespace: str = "kaia",
        timeout: float = 15.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.namespace = namespace
        self.max_retries = max_retries
        self.backoff = backoff
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    def _method(self, name: str) -> str:
        return f"{self.namespace}_{name}"

    async def request(self, method: str, params: list, retry: bool = True) -> Any:
        """Send one JSON-RPC request.

        Raises:
            RPCError: The node answered with an error object.
            UpstreamUnavailable: The node could not be reached.
        """
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        attempts = self.max_retries if retry else 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = await self._client.post(self.url, json=payload)
                if response.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"HTTP {response.status_code}", request=response.request, response=response
                    )
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                if attempt < attempts - 1:
                    logger.warning(f"RPC {method} failed (attempt {attempt + 1}): {e}")
                    await asyncio.sleep(self.backoff * (attempt + 1))
                continue

            if body.get("error"):
                error = body["error"]
                raise RPCError(error.get("code", -1), error.get("message", ""), error.get("data"))
            return body.get("result")

        logger.error(f"RPC {method} unavailable after {attempts} attempt(s): {last_error}")
        raise UpstreamUnavailable("Ledger node is unavailable")

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return to_int(await self.request(self._method("getBalance"), [address, block]))

    async def call(self, tx: dict, block: str = "latest") -> str:
        """Read-only call. A revert surfaces as :class:`RPCError`."""
        return await self.request(self._method("call"), [tx, block])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.request(self._method("getTransactionReceipt"), [tx_hash])

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return await self.request(self._method("getTransactionByHash"), [tx_hash])

    async def send_raw_transaction(self, raw: Union[bytes, str]) -> str:
        if isinstance(raw, (bytes, bytearray)):
            raw = "0x" + bytes(raw).hex()
        return await self.request(self._method("sendRawTransaction"), [raw], retry=False)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return to_int(await self.request(self._method("getTransactionCount"), [address, block]))

    async def gas_price(self) -> int:
        return to_int(await self.request(self._method("gasPrice"), []))

    async def block_number(self) -> int:
        return to_int(await self.request(self._method("blockNumber"), []))

    async def chain_id(self) -> int:
        return to_int(await self.request(self._method("chainId"), []))
