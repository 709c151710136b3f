"""Kaia fee-delegated transaction codec.

A fee-delegated transaction is signed twice: the sender signs the
transaction fields, the fee payer signs the same fields plus its own
address. Raw form::

    type || rlp([...fields, txSignatures, feePayer, feePayerSignatures])

Signing hashes::

    sender:    keccak(rlp([rlp([type, ...fields]), chainId, 0, 0]))
    fee payer: keccak(rlp([rlp([type, ...fields]), feePayer, chainId, 0, 0]))

with ``v = recovery_id + chainId * 2 + 35``.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

import rlp
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import keccak, to_canonical_address, to_checksum_address

from feerelay.chain.abi import to_raw_bytes

TX_TYPE_FEE_DELEGATED_VALUE_TRANSFER = 0x09
TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION = 0x31

SUPPORTED_TYPES = {
    TX_TYPE_FEE_DELEGATED_VALUE_TRANSFER: "FeeDelegatedValueTransfer",
    TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION: "FeeDelegatedSmartContractExecution",
}

# Wallets fill empty signature slots with [1, 0, 0]
EMPTY_SIGNATURE = (1, 0, 0)


class TransactionDecodeError(ValueError):
    """Raw bytes are not a supported fee-delegated transaction."""

    pass


def _to_int(value: bytes) -> int:
    return int.from_bytes(value, "big") if value else 0


def _address(value: bytes) -> str:
    return to_checksum_address("0x" + value.hex())


def _private_key(key) -> keys.PrivateKey:
    if isinstance(key, keys.PrivateKey):
        return key
    if isinstance(key, str):
        key = to_raw_bytes(key if key.startswith("0x") else "0x" + key)
    return keys.PrivateKey(key)


@dataclass
class FeeDelegatedTransaction:
    """A decoded fee-delegated transaction."""

    tx_type: int
    nonce: int
    gas_price: int
    gas: int
    to: str
    value: int
    sender: str
    data: bytes = b""
    signatures: list[tuple[int, int, int]] = field(default_factory=list)
    fee_payer: Optional[str] = None
    fee_payer_signatures: list[tuple[int, int, int]] = field(default_factory=list)

    def __post_init__(self):
        if self.tx_type not in SUPPORTED_TYPES:
            raise TransactionDecodeError(f"Unsupported transaction type 0x{self.tx_type:02x}")
        self.to = to_checksum_address(self.to)
        self.sender = to_checksum_address(self.sender)
        if self.fee_payer:
            self.fee_payer = to_checksum_address(self.fee_payer)

    @property
    def type_name(self) -> str:
        return SUPPORTED_TYPES[self.tx_type]

    @property
    def max_fee(self) -> int:
        """Upper bound on what the fee payer is charged."""
        return self.gas * self.gas_price

    def _fields(self) -> list:
        fields = [
            self.nonce,
            self.gas_price,
            self.gas,
            to_canonical_address(self.to),
            self.value,
            to_canonical_address(self.sender),
        ]
        if self.tx_type == TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION:
            fields.append(self.data)
        return fields

    def _encoded_body(self) -> bytes:
        return rlp.encode([self.tx_type] + self._fields())

    def sender_sig_hash(self, chain_id: int) -> bytes:
        return keccak(rlp.encode([self._encoded_body(), chain_id, 0, 0]))

    def fee_payer_sig_hash(self, chain_id: int) -> bytes:
        if not self.fee_payer:
            raise ValueError("Fee payer address is not set")
        return keccak(
            rlp.encode([self._encoded_body(), to_canonical_address(self.fee_payer), chain_id, 0, 0])
        )

    def encode(self) -> bytes:
        """Serialize to the raw form accepted by ``sendRawTransaction``."""
        signatures = [list(sig) for sig in self.signatures] or [list(EMPTY_SIGNATURE)]
        fee_payer_signatures = [list(sig) for sig in self.fee_payer_signatures] or [
            list(EMPTY_SIGNATURE)
        ]
        fee_payer = to_canonical_address(self.fee_payer) if self.fee_payer else b""
        payload = rlp.encode(self._fields() + [signatures, fee_payer, fee_payer_signatures])
        return bytes([self.tx_type]) + payload

    def to_hex(self) -> str:
        return "0x" + self.encode().hex()

    @property
    def tx_hash(self) -> str:
        """Hash of the fully signed transaction."""
        return "0x" + keccak(self.encode()).hex()

    @classmethod
    def decode(cls, raw: Union[bytes, str]) -> "FeeDelegatedTransaction":
        """Parse a raw fee-delegated transaction.

        Raises:
            TransactionDecodeError: On any malformed input.
        """
        try:
            data = to_raw_bytes(raw)
        except ValueError as e:
            raise TransactionDecodeError("Transaction is not valid hex") from e
        if len(data) < 2:
            raise TransactionDecodeError("Transaction is empty")

        tx_type = data[0]
        if tx_type not in SUPPORTED_TYPES:
            raise TransactionDecodeError(f"Unsupported transaction type 0x{tx_type:02x}")

        try:
            items = rlp.decode(data[1:])
        except rlp.DecodingError as e:
            raise TransactionDecodeError("Transaction is not valid RLP") from e

        n_fields = 7 if tx_type == TX_TYPE_FEE_DELEGATED_SMART_CONTRACT_EXECUTION else 6
        if not isinstance(items, list) or len(items) != n_fields + 3:
            raise TransactionDecodeError("Unexpected number of transaction fields")

        fields = items[:n_fields]
        sigs, fee_payer, fee_payer_sigs = items[n_fields:]
        if not all(isinstance(f, bytes) for f in fields) or not isinstance(fee_payer, bytes):
            raise TransactionDecodeError("Transaction fields must be byte strings")
        if len(fields[3]) != 20 or len(fields[5]) != 20:
            raise TransactionDecodeError("Invalid address field")

        try:
            return cls(
                tx_type=tx_type,
                nonce=_to_int(fields[0]),
                gas_price=_to_int(fields[1]),
                gas=_to_int(fields[2]),
                to=_address(fields[3]),
                value=_to_int(fields[4]),
                sender=_address(fields[5]),
                data=fields[6] if n_fields == 7 else b"",
                signatures=_decode_signatures(sigs),
                fee_payer=_address(fee_payer) if len(fee_payer) == 20 else None,
                fee_payer_signatures=_decode_signatures(fee_payer_sigs),
            )
        except (TypeError, ValueError) as e:
            raise TransactionDecodeError(f"Malformed transaction: {e}") from e

    def recover_senders(self, chain_id: int) -> list[str]:
        """Addresses recovered from the sender signatures."""
        return _recover(self.sender_sig_hash(chain_id), self.signatures, chain_id)

    def recover_fee_payers(self, chain_id: int) -> list[str]:
        return _recover(self.fee_payer_sig_hash(chain_id), self.fee_payer_signatures, chain_id)

    def sign_as_sender(self, private_key: Union[str, bytes], chain_id: int) -> None:
        """Add a sender signature (wallet side; used by clients and tests)."""
        self.signatures = [_sign(self.sender_sig_hash(chain_id), private_key, chain_id)]

    def sign_as_fee_payer(self, private_key: Union[str, bytes], chain_id: int) -> None:
        """Set the fee payer to the key's address and co-sign."""
        pk = _private_key(private_key)
        self.fee_payer = pk.public_key.to_checksum_address()
        self.fee_payer_signatures = [_sign(self.fee_payer_sig_hash(chain_id), pk, chain_id)]


def _decode_signatures(items) -> list[tuple[int, int, int]]:
    if not isinstance(items, list):
        raise TypeError("signature list expected")
    signatures = []
    for item in items:
        if not isinstance(item, list) or len(item) != 3:
            raise TypeError("signature must be [v, r, s]")
        v, r, s = (_to_int(x) for x in item)
        if r == 0 and s == 0:
            continue
        signatures.append((v, r, s))
    return signatures


def _sign(msg_hash: bytes, private_key, chain_id: int) -> tuple[int, int, int]:
    signature = _private_key(private_key).sign_msg_hash(msg_hash)
    return (signature.v + chain_id * 2 + 35, signature.r, signature.s)


def _recover(msg_hash: bytes, signatures: list, chain_id: int) -> list[str]:
    recovered = []
    for v, r, s in signatures:
        recovery_id = v - chain_id * 2 - 35
        if recovery_id not in (0, 1):
            raise TransactionDecodeError("Signature has the wrong chain id")
        try:
            signature = keys.Signature(vrs=(recovery_id, r, s))
            public_key = signature.recover_public_key_from_msg_hash(msg_hash)
        except (BadSignature, KeyValidationError, ValueError) as e:
            raise TransactionDecodeError("Signature could not be recovered") from e
        recovered.append(public_key.to_checksum_address())
    return recovered
