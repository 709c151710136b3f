"""Tests for the transfer orchestrator."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from fakes import (
    OTHER,
    OTHER_KEY,
    RECIPIENT,
    SENDER,
    SENDER_KEY,
    TOKEN,
    user_transaction,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from feerelay.auth import AuthorizationKind, sign_authorization
from feerelay.auth.verifier import AuthorizationVerifier
from feerelay.chain.abi import Token
from feerelay.errors import (
    InvalidStateTransition,
    QuoteExpired,
    QuoteInvalid,
    TransferNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from feerelay.ledger.database import get_db
from feerelay.ledger.models import Base, TransferStatus
from feerelay.ledger.repository import TransferRepository
from feerelay.services import TransferRequest, create_services
from feerelay.services.quote_service import QuoteEngine
from feerelay.services.transfer_service import normalize_address, to_token_units


async def signed_request(
    services,
    domain,
    clock,
    from_amount="100",
    nonce=1,
    signer_key=SENDER_KEY,
    deadline=None,
    tx_amount=None,
    quote_id=None,
) -> TransferRequest:
    """Quote a USD->PHP transfer and sign it the way a wallet would."""
    if quote_id is None:
        quote = await services.quotes.generate_quote("USD", "PHP", from_amount)
        quote_id, amount = quote.id, to_token_units(quote.from_amount, 6)
    else:
        amount = to_token_units((await services.quotes.get_quote(quote_id)).from_amount, 6)
    if deadline is None:
        deadline = int(clock()) + 600

    fields = {"from": SENDER, "to": RECIPIENT, "amount": amount, "nonce": nonce, "deadline": deadline}
    signature = sign_authorization(AuthorizationKind.TRANSFER, domain, fields, signer_key)
    raw = user_transaction(
        SENDER_KEY, TOKEN, Token.transfer.encode(RECIPIENT, tx_amount or amount)
    )
    return TransferRequest(
        quote_id=quote_id,
        sender=SENDER,
        recipient=RECIPIENT,
        signature=signature,
        nonce=nonce,
        deadline=deadline,
        raw_transaction=raw,
    )


async def pending_transfer(session_factory, quote_id="quote_pending"):
    async with get_db(session_factory) as session:
        return await TransferRepository(session).create(
            quote_id=quote_id,
            sender_address=SENDER,
            recipient_address=RECIPIENT,
            from_currency="USD",
            to_currency="PHP",
            from_amount=Decimal("10.00"),
            to_amount=Decimal("560.00"),
            exchange_rate=Decimal("56"),
            platform_fee=Decimal("0.05"),
            total_cost=Decimal("10.05"),
        )


class TestHelpers:
    def test_to_token_units_rounds_down(self):
        assert to_token_units(Decimal("100.00"), 6) == 100_000_000
        assert to_token_units(Decimal("0.0000019"), 6) == 1

    def test_normalize_address(self):
        assert normalize_address(SENDER.lower()) == SENDER
        with pytest.raises(ValidationError, match="recipient"):
            normalize_address("0x123", "recipient")


class TestCreateTransfer:
    """Tests for binding quotes to authorizations and executing them."""

    @pytest.mark.asyncio
    async def test_completed_transfer(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.COMPLETED.value
        assert transfer.tx_hash == ledger.sent[0]["hash"]
        assert transfer.block_number == ledger.block
        assert transfer.gas_used > 0
        assert transfer.error_code is None
        assert transfer.completed_at is not None
        assert ledger.tokens[RECIPIENT.lower()] == 100_000_000
        assert ledger.tokens[SENDER.lower()] == 400_000_000

    @pytest.mark.asyncio
    async def test_amounts_copied_from_quote(self, services, domain, clock):
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.quote_id == request.quote_id
        assert transfer.from_amount == Decimal("100.00")
        assert transfer.to_amount == Decimal("5600.00")
        assert transfer.platform_fee == Decimal("0.50")
        assert transfer.total_cost == Decimal("100.50")

    @pytest.mark.asyncio
    async def test_quote_consumed(self, services, domain, clock):
        request = await signed_request(services, domain, clock)
        await services.transfers.create_transfer(request)

        validation = await services.quotes.validate_quote(request.quote_id)
        assert validation.valid is False

        with pytest.raises(QuoteInvalid):
            await services.transfers.create_transfer(request)

    @pytest.mark.asyncio
    async def test_expired_quote_rejected_before_creation(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock)
        clock.advance(301)

        with pytest.raises(QuoteExpired):
            await services.transfers.create_transfer(request)
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_unknown_quote(self, services, domain, clock):
        request = await signed_request(services, domain, clock)
        request.quote_id = "quote_missing"

        with pytest.raises(QuoteInvalid):
            await services.transfers.create_transfer(request)

    @pytest.mark.asyncio
    async def test_insufficient_balance_never_executes(self, services, domain, clock, ledger):
        ledger.tokens[SENDER.lower()] = 99_999_999
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "INSUFFICIENT_BALANCE"
        assert transfer.tx_hash is None
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_expired_authorization(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock, deadline=int(clock()) - 1)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "EXPIRED"
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_wrong_signer(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock, signer_key=OTHER_KEY)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "SIGNATURE_MISMATCH"
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_malformed_signature(self, services, domain, clock):
        request = await signed_request(services, domain, clock)
        request.signature = "0x1234"

        transfer = await services.transfers.create_transfer(request)

        assert transfer.error_code == "MALFORMED_SIGNATURE"

    @pytest.mark.asyncio
    async def test_forged_request_does_not_burn_nonce(self, services, domain, clock):
        """Only a verified signature consumes the signer's nonce."""
        forged = await signed_request(services, domain, clock, signer_key=OTHER_KEY, nonce=5)
        await services.transfers.create_transfer(forged)

        genuine = await signed_request(services, domain, clock, nonce=5)
        transfer = await services.transfers.create_transfer(genuine)

        assert transfer.status == TransferStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_nonce_reuse(self, services, domain, clock, ledger):
        first = await services.transfers.create_transfer(
            await signed_request(services, domain, clock, nonce=1)
        )
        second = await services.transfers.create_transfer(
            await signed_request(services, domain, clock, from_amount="50", nonce=1)
        )

        assert first.status == TransferStatus.COMPLETED.value
        assert second.status == TransferStatus.FAILED.value
        assert second.error_code == "NONCE_REUSED"
        assert len(ledger.sent) == 1

    @pytest.mark.asyncio
    async def test_transaction_amount_must_match(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock, tx_amount=500_000_000)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "TRANSACTION_MISMATCH"
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_transaction_recipient_must_match(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock)
        request.raw_transaction = user_transaction(
            SENDER_KEY, TOKEN, Token.transfer.encode(OTHER, 100_000_000)
        )

        transfer = await services.transfers.create_transfer(request)

        assert transfer.error_code == "TRANSACTION_MISMATCH"
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_transaction_from_other_account(self, services, domain, clock, ledger):
        request = await signed_request(services, domain, clock)
        request.raw_transaction = user_transaction(
            OTHER_KEY, TOKEN, Token.transfer.encode(RECIPIENT, 100_000_000)
        )

        transfer = await services.transfers.create_transfer(request)

        assert transfer.error_code == "TRANSACTION_MISMATCH"
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_missing_transaction(self, services, domain, clock):
        request = await signed_request(services, domain, clock)
        request.raw_transaction = None

        with pytest.raises(ValidationError):
            await services.transfers.create_transfer(request)

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, services, domain, clock):
        request = await signed_request(services, domain, clock)
        request.recipient = "not-an-address"

        with pytest.raises(ValidationError):
            await services.transfers.create_transfer(request)

    @pytest.mark.asyncio
    async def test_no_fee_payer(self, services, domain, clock):
        request = await signed_request(services, domain, clock)
        services.transfers.relay = None

        with pytest.raises(UpstreamUnavailable):
            await services.transfers.create_transfer(request)

    @pytest.mark.asyncio
    async def test_revert_fails_with_reason(self, services, domain, clock, ledger):
        ledger.revert(TOKEN, Token.transfer.selector, "Pausable: paused")
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "EXECUTION_REVERTED"
        assert transfer.error == "Pausable: paused"
        assert transfer.tx_hash == ledger.sent[0]["hash"]
        assert transfer.completed_at is None

    @pytest.mark.asyncio
    async def test_rejected_submission(self, services, domain, clock, ledger):
        ledger.reject_next = "invalid gas price"
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "SUBMISSION_REJECTED"

    @pytest.mark.asyncio
    async def test_unconfirmed_stays_processing(self, services, domain, clock, ledger):
        ledger.hold_receipts = True
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.PROCESSING.value
        assert transfer.tx_hash == ledger.sent[0]["hash"]
        assert transfer.error_code == "INDETERMINATE"
        assert [t.id for t in await services.transfers.list_processing()] == [transfer.id]


class TestNodeErrors:
    """Tests for JSON-RPC error objects returned while relaying."""

    @pytest.mark.asyncio
    async def test_balance_query_error_fails_before_broadcast(self, services, domain, clock, ledger):
        ledger.fail("get_balance")
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.error_code == "UPSTREAM_UNAVAILABLE"
        assert transfer.tx_hash is None
        assert ledger.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["get_transaction_receipt", "block_number"])
    async def test_receipt_query_error_keeps_tx_hash(self, services, domain, clock, ledger, method):
        """A broadcast transfer stays PROCESSING with its hash and can be reconciled."""
        ledger.fail(method)
        request = await signed_request(services, domain, clock)

        transfer = await services.transfers.create_transfer(request)

        assert transfer.status == TransferStatus.PROCESSING.value
        assert transfer.error_code == "INDETERMINATE"
        assert len(ledger.sent) == 1
        assert transfer.tx_hash == ledger.sent[0]["hash"]

        ledger.rpc_errors.clear()
        settled = await services.transfers.reconcile_transfer(transfer.id)

        assert settled.status == TransferStatus.COMPLETED.value
        assert settled.tx_hash == transfer.tx_hash

    @pytest.mark.asyncio
    async def test_tx_hash_recorded_before_receipt(self, services, domain, clock, ledger, monkeypatch):
        seen = []
        wait_for_outcome = services.relay.wait_for_outcome

        async def observe(tx_hash, call):
            [transfer] = await services.transfers.list_processing()
            seen.append(transfer.tx_hash)
            return await wait_for_outcome(tx_hash, call)

        monkeypatch.setattr(services.relay, "wait_for_outcome", observe)

        transfer = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )

        assert seen == [ledger.sent[0]["hash"]]
        assert transfer.status == TransferStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_reconcile_node_error(self, services, domain, clock, ledger):
        ledger.hold_receipts = True
        transfer = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )
        ledger.fail("get_transaction_receipt")

        with pytest.raises(UpstreamUnavailable):
            await services.transfers.reconcile_transfer(transfer.id)

        again = await services.transfers.get_transfer(transfer.id)
        assert again.status == TransferStatus.PROCESSING.value
        assert again.tx_hash == transfer.tx_hash


class TestConcurrentTransfers:
    """Tests for transfers executed at the same time."""

    @pytest_asyncio.fixture
    async def file_services(self, tmp_path, settings, store, ledger, relay, clock):
        """Services over a file database so concurrent sessions get their own connections."""
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        yield create_services(
            settings,
            store=store,
            rpc=ledger,
            relay=relay,
            verifier=AuthorizationVerifier(clock=clock),
            quotes=QuoteEngine(store, clock=clock),
            session_factory=async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False),
        )

        await engine.dispose()

    @pytest.mark.asyncio
    async def test_independent_transfers_are_serialized(self, file_services, domain, clock, ledger, monkeypatch):
        """Two transfers run together, but the fee payer broadcasts one at a time."""
        in_flight = 0
        peak = 0
        send_raw_transaction = ledger.send_raw_transaction

        async def tracked(raw):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(0.01)
                return await send_raw_transaction(raw)
            finally:
                in_flight -= 1

        monkeypatch.setattr(ledger, "send_raw_transaction", tracked)
        first = await signed_request(file_services, domain, clock, from_amount="100", nonce=1)
        second = await signed_request(file_services, domain, clock, from_amount="50", nonce=2)

        results = await asyncio.gather(
            file_services.transfers.create_transfer(first),
            file_services.transfers.create_transfer(second),
        )

        assert [t.status for t in results] == [TransferStatus.COMPLETED.value] * 2
        assert results[0].tx_hash != results[1].tx_hash
        assert peak == 1
        assert len(ledger.sent) == 2
        assert ledger.tokens[RECIPIENT.lower()] == 150_000_000
        assert ledger.tokens[SENDER.lower()] == 350_000_000


class TestReconcile:
    """Tests for settling PROCESSING transfers later."""

    @pytest.mark.asyncio
    async def test_reconcile_completes(self, services, domain, clock, ledger):
        ledger.hold_receipts = True
        transfer = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )

        still = await services.transfers.reconcile_transfer(transfer.id)
        assert still.status == TransferStatus.PROCESSING.value

        ledger.release()
        settled = await services.transfers.reconcile_transfer(transfer.id)

        assert settled.status == TransferStatus.COMPLETED.value
        assert settled.tx_hash == transfer.tx_hash
        assert settled.error_code is None
        assert await services.transfers.list_processing() == []

    @pytest.mark.asyncio
    async def test_reconcile_reverted(self, services, domain, clock, ledger):
        ledger.hold_receipts = True
        ledger.revert(TOKEN, Token.transfer.selector, "blocked")
        transfer = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )

        ledger.release()
        settled = await services.transfers.reconcile_transfer(transfer.id)

        assert settled.status == TransferStatus.FAILED.value
        assert settled.error_code == "EXECUTION_REVERTED"
        assert settled.error == "blocked"

    @pytest.mark.asyncio
    async def test_reconcile_terminal_is_noop(self, services, domain, clock):
        transfer = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )

        again = await services.transfers.reconcile_transfer(transfer.id)
        assert again.status == TransferStatus.COMPLETED.value


class TestLifecycle:
    """Tests for lookups, history and cancellation."""

    @pytest.mark.asyncio
    async def test_get_transfer_is_idempotent(self, services, domain, clock):
        created = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )

        first = await services.transfers.get_transfer(created.id)
        second = await services.transfers.get_transfer(created.id)

        assert first.status == second.status == TransferStatus.COMPLETED.value
        assert first.tx_hash == second.tx_hash

    @pytest.mark.asyncio
    async def test_get_unknown_transfer(self, services):
        with pytest.raises(TransferNotFound):
            await services.transfers.get_transfer("missing")

    @pytest.mark.asyncio
    async def test_user_history(self, services, domain, clock):
        a = await services.transfers.create_transfer(
            await signed_request(services, domain, clock, nonce=1)
        )
        b = await services.transfers.create_transfer(
            await signed_request(services, domain, clock, from_amount="20", nonce=2)
        )

        sent = await services.transfers.get_user_transfers(SENDER)
        received = await services.transfers.get_user_transfers(RECIPIENT.lower())
        limited = await services.transfers.get_user_transfers(SENDER, limit=1)

        assert {t.id for t in sent} == {a.id, b.id}
        assert {t.id for t in received} == {a.id, b.id}
        assert len(limited) == 1
        assert await services.transfers.get_user_transfers(OTHER) == []

    @pytest.mark.asyncio
    async def test_cancel_pending(self, services, session_factory):
        pending = await pending_transfer(session_factory)

        cancelled = await services.transfers.cancel_transfer(pending.id, reason="changed my mind")

        assert cancelled.status == TransferStatus.CANCELLED.value
        assert cancelled.error == "changed my mind"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, services, session_factory):
        pending = await pending_transfer(session_factory)
        await services.transfers.cancel_transfer(pending.id)

        with pytest.raises(InvalidStateTransition):
            await services.transfers.cancel_transfer(pending.id)

    @pytest.mark.asyncio
    async def test_cancel_completed(self, services, domain, clock):
        transfer = await services.transfers.create_transfer(
            await signed_request(services, domain, clock)
        )

        with pytest.raises(InvalidStateTransition):
            await services.transfers.cancel_transfer(transfer.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, services):
        with pytest.raises(TransferNotFound):
            await services.transfers.cancel_transfer("missing")

    @pytest.mark.asyncio
    async def test_one_transfer_per_quote(self, session_factory):
        await pending_transfer(session_factory, quote_id="quote_same")

        with pytest.raises(QuoteInvalid):
            await pending_transfer(session_factory, quote_id="quote_same")
