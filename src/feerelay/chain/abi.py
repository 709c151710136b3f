"""Declarative ABI table for the contracts the relay talks to.

Each function is described once by name and parameter types; selectors
and calldata come from ``eth_abi`` rather than hand-built hex.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_bytes, to_checksum_address

logger = logging.getLogger(__name__)

ERROR_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)

PANIC_CODES = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division by zero",
    0x21: "invalid enum value",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to uninitialized function",
}

REVERT_PREFIX = "execution reverted"


def to_raw_bytes(data: Union[bytes, str, None]) -> bytes:
    """Accept bytes or a 0x-prefixed hex string."""
    if data is None:
        return b""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return to_bytes(hexstr=data) if data not in ("", "0x") else b""


def _normalize(type_: str, value: Any) -> Any:
    if type_.endswith("[]"):
        return [_normalize(type_[:-2], item) for item in value]
    if type_ == "address":
        return to_checksum_address(value)
    if type_.startswith(("uint", "int")):
        return int(value)
    return value


def _decoded(type_: str, value: Any) -> Any:
    """Checksum every decoded address, including array elements."""
    if type_.endswith("]"):
        item_type = type_[: type_.rindex("[")]
        return tuple(_decoded(item_type, item) for item in value)
    if type_ == "address":
        return to_checksum_address(value)
    return value


def _decode_all(types: Sequence[str], data: bytes) -> tuple:
    return tuple(_decoded(t, v) for t, v in zip(types, decode(list(types), data)))


@dataclass(frozen=True)
class ContractFunction:
    """A contract function: name plus ordered input/output types."""

    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return keccak(text=self.signature)[:4]

    def encode(self, *args: Any) -> bytes:
        """Calldata for a call with ``args``."""
        if len(args) != len(self.inputs):
            raise ValueError(f"{self.signature} takes {len(self.inputs)} arguments, got {len(args)}")
        values = [_normalize(t, v) for t, v in zip(self.inputs, args)]
        return self.selector + encode(list(self.inputs), values)

    def decode_input(self, data: Union[bytes, str]) -> tuple:
        """Decode calldata produced by :meth:`encode`."""
        raw = to_raw_bytes(data)
        if raw[:4] != self.selector:
            raise ValueError(f"Calldata is not a call to {self.signature}")
        return _decode_all(self.inputs, raw[4:])

    def decode_output(self, data: Union[bytes, str]) -> tuple:
        return _decode_all(self.outputs, to_raw_bytes(data))

    async def call(self, rpc, address: str, *args: Any, block: str = "latest") -> Any:
        """Run a read-only call and decode the result.

        Single-output functions return the bare value.
        """
        result = await rpc.call(
            {"to": to_checksum_address(address), "data": "0x" + self.encode(*args).hex()},
            block,
        )
        decoded = self.decode_output(result)
        return decoded[0] if len(decoded) == 1 else decoded


@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class ContractEvent:
    """A contract event: decodes matching receipt logs into dicts."""

    name: str
    params: tuple[EventParam, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic(self) -> bytes:
        return keccak(text=self.signature)

    def matches(self, log: dict) -> bool:
        topics = log.get("topics") or []
        return bool(topics) and to_raw_bytes(topics[0]) == self.topic

    def decode(self, log: dict) -> dict:
        """Decode one log entry.

        Raises:
            ValueError: If the log is not an instance of this event.
        """
        if not self.matches(log):
            raise ValueError(f"Log is not a {self.signature} event")

        topics = [to_raw_bytes(t) for t in log["topics"][1:]]
        indexed = [p for p in self.params if p.indexed]
        plain = [p for p in self.params if not p.indexed]

        result: dict[str, Any] = {}
        for param, topic in zip(indexed, topics):
            (result[param.name],) = _decode_all([param.type], topic)
        values = _decode_all([p.type for p in plain], to_raw_bytes(log.get("data")))
        for param, value in zip(plain, values):
            result[param.name] = value
        return result

    def find(self, logs: Sequence[dict], address: Optional[str] = None) -> Optional[dict]:
        """Decode the first matching log, optionally from a given contract."""
        for log in logs:
            if address and log.get("address", "").lower() != address.lower():
                continue
            if self.matches(log):
                return self.decode(log)
        return None

    def encode_log(self, address: str, **values: Any) -> dict:
        """Build a log entry (used by ledger fakes and fixtures)."""
        topics = ["0x" + self.topic.hex()]
        for param in self.params:
            if param.indexed:
                topics.append("0x" + encode([param.type], [_normalize(param.type, values[param.name])]).hex())
        plain = [p for p in self.params if not p.indexed]
        data = encode([p.type for p in plain], [_normalize(p.type, values[p.name]) for p in plain])
        return {"address": to_checksum_address(address), "topics": topics, "data": "0x" + data.hex()}


def _event(name: str, *params: tuple) -> ContractEvent:
    return ContractEvent(name, tuple(EventParam(*p) for p in params))


class Token:
    """ERC-20 settlement token with a faucet mint."""

    transfer = ContractFunction("transfer", ("address", "uint256"), ("bool",))
    balance_of = ContractFunction("balanceOf", ("address",), ("uint256",))
    mint = ContractFunction("mint", ("address", "uint256"))
    can_use_faucet = ContractFunction("canUseFaucet", ("address",), ("bool",))
    decimals = ContractFunction("decimals", (), ("uint8",))

    Transfer = _event(
        "Transfer", ("from", "address", True), ("to", "address", True), ("value", "uint256")
    )


class SYVault:
    """ERC-4626 style standardized-yield vault."""

    deposit = ContractFunction("deposit", ("uint256", "address"), ("uint256",))
    withdraw = ContractFunction("withdraw", ("uint256", "address", "address"), ("uint256",))
    redeem = ContractFunction("redeem", ("uint256", "address", "address"), ("uint256",))
    distribute_yield = ContractFunction("distributeYield")
    balance_of = ContractFunction("balanceOf", ("address",), ("uint256",))
    convert_to_assets = ContractFunction("convertToAssets", ("uint256",), ("uint256",))
    total_assets = ContractFunction("totalAssets", (), ("uint256",))
    total_supply = ContractFunction("totalSupply", (), ("uint256",))
    get_apy = ContractFunction("getAPY", (), ("uint256",))

    Deposit = _event(
        "Deposit",
        ("sender", "address", True),
        ("owner", "address", True),
        ("assets", "uint256"),
        ("shares", "uint256"),
    )
    Withdraw = _event(
        "Withdraw",
        ("sender", "address", True),
        ("receiver", "address", True),
        ("owner", "address", True),
        ("assets", "uint256"),
        ("shares", "uint256"),
    )


class YieldOrchestrator:
    """Splits SY shares into PYT/NYT and recombines them."""

    split_shares = ContractFunction("splitShares", ("uint256", "address"), ("uint256", "uint256"))
    recombine_tokens = ContractFunction("recombineTokens", ("uint256", "address"), ("uint256",))

    SharesSplit = _event(
        "SharesSplit",
        ("user", "address", True),
        ("syShares", "uint256"),
        ("pytMinted", "uint256"),
        ("nytMinted", "uint256"),
    )
    TokensRecombined = _event(
        "TokensRecombined",
        ("user", "address", True),
        ("pytBurned", "uint256"),
        ("nytBurned", "uint256"),
        ("syShares", "uint256"),
    )


class PYT:
    """Principal yield token."""

    claim_yield = ContractFunction("claimYield", (), ("uint256",))

    YieldClaimed = _event("YieldClaimed", ("user", "address", True), ("amount", "uint256"))


class AutoCompoundVault:
    deposit = ContractFunction("deposit", ("uint256",), ("uint256",))
    withdraw = ContractFunction("withdraw", ("uint256",), ("uint256",))

    Deposit = _event(
        "Deposit", ("user", "address", True), ("amount", "uint256"), ("shares", "uint256")
    )
    Withdraw = _event(
        "Withdraw", ("user", "address", True), ("shares", "uint256"), ("amount", "uint256")
    )


class YieldSet:
    """Multi-asset portfolio vault."""

    deposit = ContractFunction("deposit", ("uint256", "address"), ("uint256",))
    redeem = ContractFunction("redeem", ("uint256", "address", "address"), ("uint256",))
    rebalance = ContractFunction("rebalance")

    Deposit = SYVault.Deposit
    Withdraw = SYVault.Withdraw
    Rebalanced = _event("Rebalanced", ("timestamp", "uint256"))


def decode_revert_reason(data: Union[bytes, str, None]) -> Optional[str]:
    """Decode ``Error(string)`` or ``Panic(uint256)`` revert data."""
    raw = to_raw_bytes(data)
    if len(raw) < 4:
        return None

    selector, payload = raw[:4], raw[4:]
    try:
        if selector == ERROR_SELECTOR:
            (reason,) = decode(["string"], payload)
            return reason
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], payload)
            return f"Panic: {PANIC_CODES.get(code, hex(code))}"
    except (DecodingError, UnicodeDecodeError) as e:
        logger.debug(f"Undecodable revert payload: {e}")
    return None


def reason_from_message(message: Optional[str]) -> Optional[str]:
    """Extract the reason from a node message such as ``execution reverted: X``."""
    if not message:
        return None
    lowered = message.lower()
    idx = lowered.find(REVERT_PREFIX)
    if idx < 0:
        return None
    rest = message[idx + len(REVERT_PREFIX):].lstrip(" :")
    return rest or None
