"""Typed-data authorization schemas.

Each operation kind has exactly one schema. Field order is part of the
signed digest, so a published schema must never be reordered.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from eth_utils import is_hex_address, to_checksum_address

from feerelay.errors import AuthorizationError


class AuthorizationKind(str, Enum):
    """Operation kinds a user can authorize."""

    TRANSFER = "transfer"
    FAUCET_CLAIM = "faucet_claim"
    VAULT_DEPOSIT = "vault_deposit"
    VAULT_WITHDRAW = "vault_withdraw"
    YIELD_SPLIT = "yield_split"
    YIELD_RECOMBINE = "yield_recombine"
    YIELD_CLAIM = "yield_claim"
    YIELD_DISTRIBUTION = "yield_distribution"
    PORTFOLIO_CREATE = "portfolio_create"
    PORTFOLIO_REDEEM = "portfolio_redeem"
    PORTFOLIO_REBALANCE = "portfolio_rebalance"
    AUTOCOMPOUND_DEPOSIT = "autocompound_deposit"
    AUTOCOMPOUND_WITHDRAW = "autocompound_withdraw"


@dataclass(frozen=True)
class TypedDomain:
    """EIP-712 domain separating one platform/contract from another."""

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": to_checksum_address(self.verifying_contract),
        }


@dataclass(frozen=True)
class AuthorizationSchema:
    """Primary type name plus its ordered (name, type) fields.

    ``signer_field`` names the address field that must equal the signer,
    or None when the message carries no signer address.
    """

    kind: AuthorizationKind
    primary_type: str
    fields: tuple[tuple[str, str], ...]
    signer_field: Optional[str] = "user"

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.fields)

    def types(self) -> dict:
        """EIP-712 ``types`` mapping for this schema."""
        return {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            self.primary_type: [{"name": n, "type": t} for n, t in self.fields],
        }

    def build_message(self, values: Mapping[str, Any]) -> dict:
        """Coerce caller-supplied values into a typed message.

        Raises:
            AuthorizationError: On a missing field or a value that does not
                fit the declared type.
        """
        message = {}
        for name, type_ in self.fields:
            if name not in values or values[name] is None:
                raise AuthorizationError(f"Missing authorization field '{name}'")
            try:
                message[name] = _coerce(type_, values[name])
            except (TypeError, ValueError) as e:
                raise AuthorizationError(f"Invalid value for field '{name}'") from e
        return message

    def typed_data(self, domain: TypedDomain, values: Mapping[str, Any]) -> dict:
        """Full EIP-712 structure ready for hashing."""
        return {
            "types": self.types(),
            "primaryType": self.primary_type,
            "domain": domain.to_dict(),
            "message": self.build_message(values),
        }


def _coerce(type_: str, value: Any) -> Any:
    if type_.endswith("[]"):
        if not isinstance(value, (list, tuple)):
            raise TypeError(f"expected list for {type_}")
        return [_coerce(type_[:-2], item) for item in value]

    if type_ == "address":
        if not isinstance(value, str) or not is_hex_address(value):
            raise ValueError("invalid address")
        return to_checksum_address(value)

    if type_.startswith("uint"):
        if isinstance(value, bool):
            raise TypeError("bool is not an integer")
        if isinstance(value, str):
            value = int(value, 16) if value.startswith("0x") else int(value)
        if not isinstance(value, int) or value < 0 or value >= 2**256:
            raise ValueError("out of range")
        return value

    if type_ == "string":
        return str(value)

    raise ValueError(f"unsupported type {type_}")


_NONCE_DEADLINE = (("nonce", "uint256"), ("deadline", "uint256"))


def _schema(kind, primary_type, fields, signer_field="user") -> AuthorizationSchema:
    return AuthorizationSchema(kind, primary_type, tuple(fields) + _NONCE_DEADLINE, signer_field)


K = AuthorizationKind

SCHEMAS: Mapping[AuthorizationKind, AuthorizationSchema] = MappingProxyType({
    K.TRANSFER: _schema(
        K.TRANSFER, "Transfer",
        [("from", "address"), ("to", "address"), ("amount", "uint256")],
        signer_field="from",
    ),
    K.FAUCET_CLAIM: _schema(
        K.FAUCET_CLAIM, "FaucetClaim", [("user", "address"), ("amount", "uint256")]
    ),
    K.VAULT_DEPOSIT: _schema(
        K.VAULT_DEPOSIT, "DeFiDeposit",
        [("user", "address"), ("amount", "uint256"), ("vault", "address")],
    ),
    K.VAULT_WITHDRAW: _schema(
        K.VAULT_WITHDRAW, "DeFiWithdraw",
        [("user", "address"), ("shares", "uint256"), ("vault", "address")],
    ),
    K.YIELD_SPLIT: _schema(
        K.YIELD_SPLIT, "YieldSplit",
        [("user", "address"), ("syShares", "uint256"), ("orchestrator", "address")],
    ),
    K.YIELD_RECOMBINE: _schema(
        K.YIELD_RECOMBINE, "YieldRecombine",
        [
            ("user", "address"),
            ("pytAmount", "uint256"),
            ("nytAmount", "uint256"),
            ("orchestrator", "address"),
        ],
    ),
    K.YIELD_CLAIM: _schema(
        K.YIELD_CLAIM, "YieldClaim",
        [("user", "address"), ("token", "address"), ("amount", "uint256")],
    ),
    K.YIELD_DISTRIBUTION: _schema(
        K.YIELD_DISTRIBUTION, "YieldDistribution",
        [("orchestrator", "address")],
        signer_field=None,
    ),
    K.PORTFOLIO_CREATE: _schema(
        K.PORTFOLIO_CREATE, "PortfolioCreate",
        [
            ("user", "address"),
            ("assets", "address[]"),
            ("allocations", "uint256[]"),
            ("totalAmount", "uint256"),
            ("yieldSet", "address"),
        ],
    ),
    K.PORTFOLIO_REDEEM: _schema(
        K.PORTFOLIO_REDEEM, "PortfolioRedeem",
        [("user", "address"), ("portfolioTokens", "uint256"), ("yieldSet", "address")],
    ),
    K.PORTFOLIO_REBALANCE: _schema(
        K.PORTFOLIO_REBALANCE, "PortfolioRebalance",
        [("user", "address"), ("newAllocations", "uint256[]"), ("yieldSet", "address")],
    ),
    K.AUTOCOMPOUND_DEPOSIT: _schema(
        K.AUTOCOMPOUND_DEPOSIT, "AutoCompoundDeposit",
        [("user", "address"), ("amount", "uint256"), ("vault", "address")],
    ),
    K.AUTOCOMPOUND_WITHDRAW: _schema(
        K.AUTOCOMPOUND_WITHDRAW, "AutoCompoundWithdraw",
        [("user", "address"), ("shares", "uint256"), ("vault", "address")],
    ),
})

del K


def get_schema(kind: AuthorizationKind) -> AuthorizationSchema:
    """Look up the schema for an operation kind."""
    return SCHEMAS[AuthorizationKind(kind)]
