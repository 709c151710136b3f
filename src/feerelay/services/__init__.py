"""Application services and their wiring."""

import logging
from dataclasses import dataclass
from typing import Optional

from feerelay.auth.nonces import NonceRegistry
from feerelay.auth.schemas import TypedDomain
from feerelay.auth.verifier import AuthorizationVerifier
from feerelay.chain.relay import RelayExecutor
from feerelay.chain.rpc import LedgerRPC
from feerelay.config import Settings
from feerelay.crypto import decrypt_private_key
from feerelay.services.defi_service import DefiService
from feerelay.services.faucet_service import FaucetService
from feerelay.services.quote_service import QuoteEngine
from feerelay.services.transfer_service import TransferRequest, TransferService
from feerelay.store import KeyValueStore, create_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the API needs, built once per process."""

    settings: Settings
    store: KeyValueStore
    rpc: object
    relay: Optional[RelayExecutor]
    quotes: QuoteEngine
    transfers: TransferService
    defi: DefiService
    faucet: FaucetService

    async def close(self) -> None:
        await self.store.close()
        close = getattr(self.rpc, "close", None)
        if close is not None:
            await close()


def transfer_domain(settings: Settings) -> TypedDomain:
    """Domain for transfers and faucet claims, pinned to the settlement token."""
    return TypedDomain(
        name=settings.transfer_domain_name,
        version=settings.domain_version,
        chain_id=settings.chain_id,
        verifying_contract=settings.token_address,
    )


def create_relay(settings: Settings, rpc) -> Optional[RelayExecutor]:
    if not settings.has_fee_payer:
        logger.warning("FEE_PAYER_PRIVATE_KEY not set - relay disabled")
        return None
    key = decrypt_private_key(settings.fee_payer_private_key, settings.master_key)
    relay = RelayExecutor(
        rpc,
        key,
        chain_id=settings.chain_id,
        confirmations=settings.confirmations,
        receipt_timeout=settings.receipt_timeout,
        poll_interval=settings.receipt_poll_interval,
        low_balance_threshold=settings.fee_payer_low_balance,
        lock_timeout=settings.submission_lock_timeout,
        gas_limit=settings.fee_payer_gas_limit,
    )
    logger.info(f"Fee payer: {relay.address}")
    return relay


def create_services(
    settings: Settings,
    store: Optional[KeyValueStore] = None,
    rpc=None,
    relay: Optional[RelayExecutor] = None,
    verifier: Optional[AuthorizationVerifier] = None,
    quotes: Optional[QuoteEngine] = None,
    session_factory=None,
) -> Services:
    """Wire services from settings; any collaborator can be passed in."""
    store = store or create_store(settings.redis_url)
    rpc = rpc or LedgerRPC(
        settings.rpc_url,
        namespace=settings.rpc_namespace,
        timeout=settings.rpc_timeout,
        max_retries=settings.rpc_max_retries,
    )
    relay = relay or create_relay(settings, rpc)
    verifier = verifier or AuthorizationVerifier()
    nonces = NonceRegistry(session_factory)
    domain = transfer_domain(settings)

    quotes = quotes or QuoteEngine(store, retention_seconds=settings.quote_retention_seconds)
    transfers = TransferService(
        quotes,
        relay,
        rpc,
        token_address=settings.token_address,
        token_decimals=settings.token_decimals,
        domain=domain,
        verifier=verifier,
        nonces=nonces,
        session_factory=session_factory,
    )
    defi = DefiService(
        settings, relay, rpc, store,
        verifier=verifier, nonces=nonces, session_factory=session_factory,
    )
    faucet = FaucetService(
        relay,
        rpc,
        token_address=settings.token_address,
        token_decimals=settings.token_decimals,
        faucet_amount=settings.faucet_amount,
        domain=domain,
        verifier=verifier,
        nonces=nonces,
        session_factory=session_factory,
    )
    return Services(
        settings=settings,
        store=store,
        rpc=rpc,
        relay=relay,
        quotes=quotes,
        transfers=transfers,
        defi=defi,
        faucet=faucet,
    )


__all__ = [
    "Services",
    "TransferRequest",
    "create_services",
    "transfer_domain",
]
