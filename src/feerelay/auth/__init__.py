"""Typed-data authorization: schemas, verification and replay protection."""

from feerelay.auth.nonces import NonceRegistry
from feerelay.auth.schemas import SCHEMAS, AuthorizationKind, AuthorizationSchema, TypedDomain
from feerelay.auth.verifier import (
    AuthorizationVerifier,
    VerifiedAuthorization,
    sign_authorization,
    verify,
)

__all__ = [
    "SCHEMAS",
    "AuthorizationKind",
    "AuthorizationSchema",
    "AuthorizationVerifier",
    "NonceRegistry",
    "TypedDomain",
    "VerifiedAuthorization",
    "sign_authorization",
    "verify",
]
