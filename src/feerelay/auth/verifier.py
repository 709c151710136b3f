"""Typed-data authorization verification.

Verification is pure: it reconstructs the EIP-712 digest, recovers the
signer and checks the deadline. Replay protection lives in
:mod:`feerelay.auth.nonces`.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Union

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError as EthValidationError
from eth_utils import keccak

from feerelay.auth.schemas import AuthorizationKind, TypedDomain, get_schema
from feerelay.errors import (
    MalformedSignature,
    SignatureExpired,
    SignatureMismatch,
)

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 65


@dataclass(frozen=True)
class VerifiedAuthorization:
    """An authorization whose signature and deadline have been checked."""

    kind: AuthorizationKind
    signer: str
    message: dict
    nonce: int
    deadline: int
    digest: bytes


def parse_signature(signature: Union[str, bytes]) -> bytes:
    """Decode a 65-byte (r, s, v) signature.

    Raises:
        MalformedSignature: If the value is not 65 bytes of hex or has an
            invalid recovery byte.
    """
    if isinstance(signature, str):
        hex_part = signature[2:] if signature.startswith(("0x", "0X")) else signature
        try:
            raw = bytes.fromhex(hex_part)
        except ValueError:
            raise MalformedSignature("Signature is not valid hex")
    else:
        raw = bytes(signature)

    if len(raw) != SIGNATURE_LENGTH:
        raise MalformedSignature(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")
    if raw[64] not in (0, 1, 27, 28):
        raise MalformedSignature("Signature has an invalid recovery id")
    return raw


def signable_message(
    kind: AuthorizationKind,
    domain: TypedDomain,
    field_values: Mapping[str, Any],
) -> SignableMessage:
    """Build the EIP-712 signable message for an authorization."""
    schema = get_schema(kind)
    return encode_typed_data(full_message=schema.typed_data(domain, field_values))


def typed_data_digest(message: SignableMessage) -> bytes:
    """The 32-byte hash that is actually signed."""
    return keccak(b"\x19" + message.version + message.header + message.body)


class AuthorizationVerifier:
    """Verifies signed typed-data authorizations.

    The clock is injectable and must return unix seconds, the same unit
    as every authorization deadline.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def verify(
        self,
        kind: AuthorizationKind,
        domain: TypedDomain,
        field_values: Mapping[str, Any],
        signature: Union[str, bytes],
        claimed_signer: str,
    ) -> VerifiedAuthorization:
        """Verify an authorization.

        Checks run in order: signature shape, message fields, deadline,
        signer recovery.

        Raises:
            MalformedSignature: Signature is not a well-formed 65-byte value.
            AuthorizationError: A field is missing or mistyped.
            SignatureExpired: ``now > deadline``.
            SignatureMismatch: Signature does not recover to ``claimed_signer``.
        """
        kind = AuthorizationKind(kind)
        raw_signature = parse_signature(signature)

        schema = get_schema(kind)
        signable = signable_message(kind, domain, field_values)
        message = schema.build_message(field_values)

        deadline = message["deadline"]
        now = self._clock()
        if now > deadline:
            raise SignatureExpired(f"Authorization expired at {deadline}")

        try:
            recovered = Account.recover_message(signable, signature=raw_signature)
        except (BadSignature, EthValidationError, ValueError) as e:
            logger.debug(f"Signature recovery failed for {kind.value}: {e}")
            raise MalformedSignature("Signature could not be recovered") from e

        if recovered.lower() != claimed_signer.lower():
            raise SignatureMismatch("Signature does not match the claimed signer")

        if schema.signer_field and message[schema.signer_field].lower() != recovered.lower():
            raise SignatureMismatch(
                f"Field '{schema.signer_field}' does not match the signer"
            )

        return VerifiedAuthorization(
            kind=kind,
            signer=recovered,
            message=message,
            nonce=message["nonce"],
            deadline=deadline,
            digest=typed_data_digest(signable),
        )


_default_verifier = AuthorizationVerifier()


def verify(
    kind: AuthorizationKind,
    domain: TypedDomain,
    field_values: Mapping[str, Any],
    signature: Union[str, bytes],
    claimed_signer: str,
) -> VerifiedAuthorization:
    """Verify with the wall clock."""
    return _default_verifier.verify(kind, domain, field_values, signature, claimed_signer)


def sign_authorization(
    kind: AuthorizationKind,
    domain: TypedDomain,
    field_values: Mapping[str, Any],
    private_key: Union[str, bytes],
) -> str:
    """Sign an authorization the way a wallet would (client and test helper)."""
    signed = Account.sign_message(signable_message(kind, domain, field_values), private_key)
    return "0x" + bytes(signed.signature).hex()
