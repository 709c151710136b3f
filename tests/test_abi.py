"""Tests for the ABI table and revert decoding."""

import pytest
from eth_abi import encode
from fakes import RECIPIENT, SENDER, TOKEN, revert_data

from feerelay.chain.abi import (
    PANIC_SELECTOR,
    ContractFunction,
    SYVault,
    Token,
    YieldOrchestrator,
    decode_revert_reason,
    reason_from_message,
)


class TestFunctions:
    """Tests for function selectors and calldata."""

    @pytest.mark.parametrize(
        "function,selector",
        [
            (Token.transfer, "a9059cbb"),
            (Token.balance_of, "70a08231"),
            (SYVault.deposit, "6e553f65"),
            (SYVault.redeem, "ba087652"),
            (SYVault.total_supply, "18160ddd"),
        ],
    )
    def test_known_selectors(self, function, selector):
        assert function.selector.hex() == selector

    def test_encode_and_decode_input(self):
        data = Token.transfer.encode(RECIPIENT.lower(), 42)

        assert data[:4] == Token.transfer.selector
        assert len(data) == 4 + 64
        assert Token.transfer.decode_input(data) == (RECIPIENT, 42)

    def test_encode_wrong_arity(self):
        with pytest.raises(ValueError, match="takes 2 arguments"):
            Token.transfer.encode(RECIPIENT)

    def test_decode_input_wrong_selector(self):
        with pytest.raises(ValueError):
            Token.transfer.decode_input(Token.balance_of.encode(SENDER))

    def test_decode_multiple_outputs(self):
        output = encode(["uint256", "uint256"], [3, 4])
        assert YieldOrchestrator.split_shares.decode_output(output) == (3, 4)

    def test_decoded_addresses_are_checksummed(self):
        function = ContractFunction("getAssets", (), ("address[]", "address", "uint256"))
        output = encode(["address[]", "address", "uint256"], [[SENDER.lower(), TOKEN.lower()], RECIPIENT.lower(), 1])

        assets, owner, count = function.decode_output(output)

        assert assets == (SENDER, TOKEN)
        assert owner == RECIPIENT
        assert count == 1

    @pytest.mark.asyncio
    async def test_call_returns_bare_single_value(self):
        class StubRPC:
            async def call(self, tx, block):
                self.tx = tx
                return "0x" + encode(["uint256"], [1234]).hex()

        rpc = StubRPC()
        balance = await Token.balance_of.call(rpc, TOKEN.lower(), SENDER)

        assert balance == 1234
        assert rpc.tx["to"] == TOKEN
        assert rpc.tx["data"].startswith("0x70a08231")


class TestEvents:
    """Tests for event log decoding."""

    def test_find_decodes_matching_log(self):
        log = Token.Transfer.encode_log(TOKEN, **{"from": SENDER, "to": RECIPIENT, "value": 7})

        event = Token.Transfer.find([{"topics": ["0x" + "00" * 32], "data": "0x"}, log])

        assert event == {"from": SENDER, "to": RECIPIENT, "value": 7}

    def test_indexed_addresses_are_checksummed(self):
        log = Token.Transfer.encode_log(TOKEN, **{"from": SENDER.lower(), "to": RECIPIENT.lower(), "value": 7})

        event = Token.Transfer.decode(log)

        assert event["from"] == SENDER
        assert event["to"] == RECIPIENT

    def test_find_filters_by_address(self):
        log = Token.Transfer.encode_log(TOKEN, **{"from": SENDER, "to": RECIPIENT, "value": 7})
        assert Token.Transfer.find([log], address=SENDER) is None
        assert Token.Transfer.find([log], address=TOKEN.lower()) is not None

    def test_find_without_match(self):
        assert SYVault.Deposit.find([]) is None

    def test_decode_rejects_other_event(self):
        log = Token.Transfer.encode_log(TOKEN, **{"from": SENDER, "to": RECIPIENT, "value": 7})
        with pytest.raises(ValueError):
            SYVault.Deposit.decode(log)

    def test_transfer_topic(self):
        assert Token.Transfer.topic.hex() == (
            "ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
        )


class TestRevertReasons:
    """Tests for revert reason extraction."""

    def test_error_string(self):
        assert decode_revert_reason(revert_data("Insufficient balance")) == "Insufficient balance"

    def test_panic_code(self):
        data = PANIC_SELECTOR + encode(["uint256"], [0x11])
        assert decode_revert_reason(data) == "Panic: arithmetic overflow or underflow"

    def test_unknown_panic_code(self):
        data = PANIC_SELECTOR + encode(["uint256"], [0x99])
        assert decode_revert_reason(data) == "Panic: 0x99"

    @pytest.mark.parametrize("data", [None, "0x", "0x1234", "0xdeadbeef00"])
    def test_undecodable(self, data):
        assert decode_revert_reason(data) is None

    def test_truncated_error_payload(self):
        assert decode_revert_reason(revert_data("boom")[:20]) is None

    @pytest.mark.parametrize(
        "message,reason",
        [
            ("execution reverted: Faucet cooldown", "Faucet cooldown"),
            ("VM Exception: Execution Reverted: nope", "nope"),
            ("execution reverted", None),
            ("nonce too low", None),
            (None, None),
        ],
    )
    def test_reason_from_message(self, message, reason):
        assert reason_from_message(message) == reason
