"""Request and response contracts for the HTTP API.

Wire names are camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from feerelay.ledger.models import Transfer
from feerelay.services.quote_service import Quote

CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.00000001")


class QuoteRequest(BaseModel):
    """Request for a transfer quote."""

    model_config = ConfigDict(populate_by_name=True)

    from_currency: str = Field(..., alias="fromCurrency", description="Source currency (USD, USDT, KRW, PHP)")
    to_currency: str = Field(..., alias="toCurrency", description="Destination currency")
    from_amount: Decimal = Field(..., alias="fromAmount", description="Amount in the source currency")


class TransferCreateRequest(BaseModel):
    """Request to execute a quoted transfer."""

    model_config = ConfigDict(populate_by_name=True)

    quote_id: str = Field(..., alias="quoteId")
    sender: str = Field(..., alias="from", description="Sender address, must be the signer")
    recipient: str = Field(..., alias="to", description="Recipient address")
    signature: str = Field(..., description="65-byte typed-data signature, hex")
    nonce: int = Field(..., ge=0)
    deadline: int = Field(..., ge=0, description="Unix timestamp in seconds")
    sender_raw_transaction: Optional[str] = Field(
        None,
        alias="senderRawTransaction",
        description="Fee-delegated transaction signed by the sender, hex",
    )


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=200)


class DefiOperationRequest(BaseModel):
    """Signed vault operation. Only the amount fields the operation uses are read."""

    model_config = ConfigDict(populate_by_name=True)

    user: str
    signature: str
    nonce: int = Field(..., ge=0)
    deadline: int = Field(..., ge=0)
    sender_raw_transaction: Optional[str] = Field(None, alias="senderRawTransaction")

    amount: Optional[int] = Field(None, ge=0)
    shares: Optional[int] = Field(None, ge=0)
    sy_shares: Optional[int] = Field(None, alias="syShares", ge=0)
    pyt_amount: Optional[int] = Field(None, alias="pytAmount", ge=0)
    nyt_amount: Optional[int] = Field(None, alias="nytAmount", ge=0)
    total_amount: Optional[int] = Field(None, alias="totalAmount", ge=0)
    portfolio_tokens: Optional[int] = Field(None, alias="portfolioTokens", ge=0)
    assets: Optional[list[str]] = None
    allocations: Optional[list[int]] = None
    new_allocations: Optional[list[int]] = Field(None, alias="newAllocations")

    def message_fields(self) -> dict[str, Any]:
        """Fields as they appear in the typed-data message."""
        values = self.model_dump(
            by_alias=True,
            exclude_none=True,
            include={
                "amount",
                "shares",
                "sy_shares",
                "pyt_amount",
                "nyt_amount",
                "total_amount",
                "portfolio_tokens",
                "assets",
                "allocations",
                "new_allocations",
            },
        )
        values["nonce"] = self.nonce
        values["deadline"] = self.deadline
        return values


class FaucetRequest(BaseModel):
    """Signed faucet claim."""

    user: str
    amount: int = Field(..., gt=0, description="Base units; must equal the faucet amount")
    nonce: int = Field(..., ge=0)
    deadline: int = Field(..., ge=0)
    signature: str


def _money(value: Decimal) -> str:
    return str(Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def _rate(value: Decimal) -> str:
    return str(Decimal(value).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP))


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def quote_to_dict(quote: Quote, now: float) -> dict:
    return {
        "id": quote.id,
        "fromCurrency": quote.from_currency,
        "toCurrency": quote.to_currency,
        "fromAmount": _money(quote.from_amount),
        "toAmount": _money(quote.to_amount),
        "exchangeRate": _rate(quote.exchange_rate),
        "platformFee": _money(quote.platform_fee),
        "totalCost": _money(quote.total_cost),
        "createdAt": int(quote.created_at),
        "expiresAt": int(quote.expires_at),
        "expiresIn": max(0, int(quote.seconds_until_expiry(now))),
    }


def transfer_to_dict(transfer: Transfer) -> dict:
    error = None
    if transfer.error_code:
        error = {"code": transfer.error_code, "message": transfer.error}
    return {
        "id": transfer.id,
        "quoteId": transfer.quote_id,
        "from": transfer.sender_address,
        "to": transfer.recipient_address,
        "fromCurrency": transfer.from_currency,
        "toCurrency": transfer.to_currency,
        "fromAmount": _money(transfer.from_amount),
        "toAmount": _money(transfer.to_amount),
        "exchangeRate": _rate(transfer.exchange_rate),
        "platformFee": _money(transfer.platform_fee),
        "totalCost": _money(transfer.total_cost),
        "status": transfer.status,
        "txHash": transfer.tx_hash,
        "blockNumber": transfer.block_number,
        "gasUsed": transfer.gas_used,
        "error": error,
        "createdAt": _timestamp(transfer.created_at),
        "updatedAt": _timestamp(transfer.updated_at),
        "completedAt": _timestamp(transfer.completed_at),
    }
