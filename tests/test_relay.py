"""Tests for the relay executor."""

import asyncio
from decimal import Decimal

import pytest
from fakes import (
    CHAIN_ID,
    FEE_PAYER,
    OTHER_KEY,
    RECIPIENT,
    SENDER,
    SENDER_KEY,
    TOKEN,
    user_transaction,
)

from feerelay.chain.abi import Token
from feerelay.chain.kaia_tx import FeeDelegatedTransaction
from feerelay.chain.relay import DEFAULT_REVERT_REASON
from feerelay.chain.submission import SubmissionQueue
from feerelay.errors import (
    ExecutionReverted,
    Indeterminate,
    LockTimeout,
    SubmissionRejected,
    UpstreamUnavailable,
)


def transfer_tx(amount: int = 100_000_000, **kwargs) -> str:
    return user_transaction(SENDER_KEY, TOKEN, Token.transfer.encode(RECIPIENT, amount), **kwargs)


class TestSubmit:
    """Tests for co-signing and settling user transactions."""

    @pytest.mark.asyncio
    async def test_successful_transfer(self, relay, ledger):
        outcome = await relay.submit(transfer_tx())

        assert outcome.success is True
        assert outcome.tx_hash == ledger.sent[0]["hash"]
        assert outcome.block_number == ledger.block
        assert outcome.gas_used > 0
        assert ledger.tokens[RECIPIENT.lower()] == 100_000_000
        assert Token.Transfer.find(outcome.logs)["value"] == 100_000_000

    @pytest.mark.asyncio
    async def test_fee_payer_cosigns(self, relay, ledger):
        """The broadcast transaction carries the fee payer signature."""
        await relay.submit(transfer_tx())

        sent = ledger.sent[0]
        assert sent["from"] == SENDER
        assert relay.address == FEE_PAYER

    @pytest.mark.asyncio
    async def test_revert_is_a_failure_with_reason(self, relay, ledger):
        ledger.revert(TOKEN, Token.transfer.selector, "ERC20: transfer amount exceeds balance")

        outcome = await relay.submit(transfer_tx())

        assert outcome.success is False
        assert outcome.failure_reason == "ERC20: transfer amount exceeds balance"
        assert outcome.tx_hash == ledger.sent[0]["hash"]

    @pytest.mark.asyncio
    async def test_raise_for_status(self, relay, ledger):
        ledger.revert(TOKEN, Token.transfer.selector, "nope")
        outcome = await relay.submit(transfer_tx())

        with pytest.raises(ExecutionReverted) as exc_info:
            outcome.raise_for_status()
        assert exc_info.value.tx_hash == outcome.tx_hash
        assert exc_info.value.message == "nope"

    @pytest.mark.asyncio
    async def test_revert_without_simulated_reason(self, relay, ledger):
        """A receipt with status 0 is never reported as success."""
        original_call = ledger.call

        async def call_without_reason(tx, block="latest"):
            if block != "latest":
                return "0x"
            return await original_call(tx, block)

        ledger.revert(TOKEN, Token.transfer.selector, "hidden")
        ledger.call = call_without_reason

        outcome = await relay.submit(transfer_tx())

        assert outcome.success is False
        assert outcome.failure_reason == DEFAULT_REVERT_REASON

    @pytest.mark.asyncio
    async def test_missing_receipt_is_indeterminate(self, relay, ledger):
        ledger.hold_receipts = True

        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())

        assert exc_info.value.tx_hash == ledger.sent[0]["hash"]

    @pytest.mark.asyncio
    async def test_node_rejection(self, relay, ledger):
        ledger.reject_next = "insufficient funds for gas"

        with pytest.raises(SubmissionRejected, match="insufficient funds"):
            await relay.submit(transfer_tx())
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_interrupted_broadcast_is_indeterminate(self, relay, ledger):
        async def broken_send(raw):
            raise UpstreamUnavailable("connection reset")

        ledger.send_raw_transaction = broken_send

        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())
        assert exc_info.value.tx_hash.startswith("0x")

    @pytest.mark.asyncio
    async def test_fee_payer_cannot_cover_gas(self, relay, ledger):
        ledger.native[FEE_PAYER.lower()] = 1000

        with pytest.raises(SubmissionRejected, match="Fee payer balance"):
            await relay.submit(transfer_tx())
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_wrong_chain_rejected(self, relay):
        with pytest.raises(SubmissionRejected, match="Malformed"):
            await relay.submit(transfer_tx(chain_id=8217))

    @pytest.mark.asyncio
    async def test_signature_not_from_sender_rejected(self, relay, ledger):
        tx = FeeDelegatedTransaction(
            tx_type=0x31,
            nonce=0,
            gas_price=25 * 10**9,
            gas=150000,
            to=TOKEN,
            value=0,
            sender=SENDER,
            data=Token.transfer.encode(RECIPIENT, 1),
        )
        tx.sign_as_sender(OTHER_KEY, CHAIN_ID)

        with pytest.raises(SubmissionRejected, match="not signed by its sender"):
            await relay.submit(tx.to_hex())
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_garbage_rejected(self, relay):
        with pytest.raises(SubmissionRejected):
            await relay.submit("0x31deadbeef")


class TestFeePayerCalls:
    """Tests for the fee payer's own transactions."""

    @pytest.mark.asyncio
    async def test_send_as_fee_payer(self, relay, ledger):
        outcome = await relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 5))

        assert outcome.success is True
        assert ledger.sent[0]["from"] == FEE_PAYER
        assert ledger.tokens[SENDER.lower()] == 500 * 10**6 + 5

    @pytest.mark.asyncio
    async def test_concurrent_calls_use_distinct_nonces(self, relay, ledger):
        """Concurrent sends are serialized and each gets its own nonce."""
        outcomes = await asyncio.gather(
            relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 1)),
            relay.send_as_fee_payer(TOKEN, Token.mint.encode(RECIPIENT, 2)),
            relay.send_as_fee_payer(TOKEN, Token.mint.encode(RECIPIENT, 3)),
        )

        assert all(outcome.success for outcome in outcomes)
        assert len({outcome.tx_hash for outcome in outcomes}) == 3
        assert ledger.account_nonces[FEE_PAYER.lower()] == 3

    @pytest.mark.asyncio
    async def test_rejected_send_retried_with_fresh_nonce(self, relay, ledger):
        ledger.reject_next = "nonce too low"

        outcome = await relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 1))

        assert outcome.success is True
        assert len(ledger.sent) == 1

    @pytest.mark.asyncio
    async def test_rejected_every_attempt(self, relay, ledger):
        original_send = ledger.send_raw_transaction

        async def always_reject(raw):
            ledger.reject_next = "replacement transaction underpriced"
            return await original_send(raw)

        ledger.send_raw_transaction = always_reject

        with pytest.raises(SubmissionRejected, match="underpriced"):
            await relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 1))

    @pytest.mark.asyncio
    async def test_busy_fee_payer(self, relay):
        relay.lock_timeout = 0.05

        async with SubmissionQueue(relay.address, timeout=1):
            with pytest.raises(LockTimeout):
                await relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 1))


class TestNodeErrors:
    """Tests for JSON-RPC error objects returned by the node."""

    @pytest.mark.asyncio
    async def test_balance_error_before_broadcast(self, relay, ledger):
        ledger.fail("get_balance")

        with pytest.raises(UpstreamUnavailable):
            await relay.submit(transfer_tx())
        assert ledger.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["get_transaction_receipt", "block_number"])
    async def test_receipt_errors_are_indeterminate(self, relay, ledger, method):
        ledger.fail(method)

        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())

        assert exc_info.value.tx_hash == ledger.sent[0]["hash"]

    @pytest.mark.asyncio
    async def test_receipt_error_recovers_within_timeout(self, relay, ledger):
        """A transient node error while polling does not end the wait."""
        ledger.fail("get_transaction_receipt")
        asyncio.get_running_loop().call_later(0.05, ledger.rpc_errors.clear)

        outcome = await relay.submit(transfer_tx())

        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_on_broadcast_gets_hash_before_receipt(self, relay, ledger):
        ledger.hold_receipts = True
        broadcast = []

        async def record(tx_hash):
            broadcast.append(tx_hash)

        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx(), on_broadcast=record)

        assert broadcast == [exc_info.value.tx_hash]

    @pytest.mark.asyncio
    async def test_on_broadcast_not_called_when_rejected(self, relay, ledger):
        ledger.reject_next = "invalid gas price"
        broadcast = []

        async def record(tx_hash):
            broadcast.append(tx_hash)

        with pytest.raises(SubmissionRejected):
            await relay.submit(transfer_tx(), on_broadcast=record)
        assert broadcast == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["gas_price", "get_balance", "get_transaction_count"])
    async def test_fee_payer_call_preparation_error(self, relay, ledger, method):
        ledger.fail(method)

        with pytest.raises(UpstreamUnavailable):
            await relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 1))
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_fee_payer_call_on_broadcast(self, relay, ledger):
        broadcast = []

        async def record(tx_hash):
            broadcast.append(tx_hash)

        outcome = await relay.send_as_fee_payer(TOKEN, Token.mint.encode(SENDER, 1), on_broadcast=record)

        assert broadcast == [outcome.tx_hash]

    @pytest.mark.asyncio
    async def test_reconcile_error_is_upstream_unavailable(self, relay, ledger):
        ledger.hold_receipts = True
        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())
        ledger.release()
        ledger.fail("block_number")

        with pytest.raises(UpstreamUnavailable):
            await relay.reconcile(exc_info.value.tx_hash)


class TestReconcile:
    """Tests for settling indeterminate transactions later."""

    @pytest.mark.asyncio
    async def test_unconfirmed_returns_none(self, relay, ledger):
        ledger.hold_receipts = True
        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())

        assert await relay.reconcile(exc_info.value.tx_hash) is None

    @pytest.mark.asyncio
    async def test_confirmed_after_release(self, relay, ledger):
        ledger.hold_receipts = True
        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())

        ledger.release()
        outcome = await relay.reconcile(exc_info.value.tx_hash)

        assert outcome.success is True
        assert outcome.tx_hash == exc_info.value.tx_hash

    @pytest.mark.asyncio
    async def test_reverted_after_release(self, relay, ledger):
        ledger.hold_receipts = True
        ledger.revert(TOKEN, Token.transfer.selector, "paused")
        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())

        ledger.release()
        outcome = await relay.reconcile(exc_info.value.tx_hash)

        assert outcome.success is False
        assert outcome.failure_reason == "paused"

    @pytest.mark.asyncio
    async def test_confirmation_depth(self, relay, ledger):
        relay.confirmations = 3
        ledger.hold_receipts = True
        with pytest.raises(Indeterminate) as exc_info:
            await relay.submit(transfer_tx())
        ledger.release()

        assert await relay.reconcile(exc_info.value.tx_hash) is None
        ledger.block += 2
        assert (await relay.reconcile(exc_info.value.tx_hash)).success is True


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy_balance(self, relay):
        health = await relay.health()

        assert health.address == FEE_PAYER
        assert health.balance == Decimal(100)
        assert health.low_balance is False

    @pytest.mark.asyncio
    async def test_low_balance_flag(self, relay, ledger, caplog):
        ledger.native[FEE_PAYER.lower()] = 5 * 10**17

        health = await relay.health()

        assert health.low_balance is True
        assert health.to_dict()["balance"] == "0.5"
        assert "balance low" in caplog.text
