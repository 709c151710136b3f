"""Quote API endpoints."""

import time

from fastapi import APIRouter, Depends

from feerelay.api.contracts import QuoteRequest, quote_to_dict
from feerelay.api.deps import get_services
from feerelay.services import Services
from feerelay.services.quote_service import QuoteEngine

router = APIRouter(prefix="/quote", tags=["Quotes"])


@router.post("", status_code=201)
async def create_quote(request: QuoteRequest, services: Services = Depends(get_services)) -> dict:
    """Price a transfer. The quote is locked in for five minutes."""
    quote = await services.quotes.generate_quote(
        request.from_currency, request.to_currency, request.from_amount
    )
    return {"success": True, "quote": quote_to_dict(quote, time.time())}


@router.get("/pairs")
async def get_supported_pairs() -> dict:
    pairs = QuoteEngine.supported_pairs()
    return {"success": True, "pairs": pairs, "total": len(pairs)}


@router.get("/rates")
async def get_rates() -> dict:
    return {"success": True, "rates": QuoteEngine.current_rates()}


@router.get("/{quote_id}")
async def get_quote(quote_id: str, services: Services = Depends(get_services)) -> dict:
    quote = await services.quotes.get_quote(quote_id)
    return {"success": True, "quote": quote_to_dict(quote, time.time())}


@router.get("/{quote_id}/validate")
async def validate_quote(quote_id: str, services: Services = Depends(get_services)) -> dict:
    """Whether the quote can still back a transfer, and why not."""
    result = await services.quotes.validate_quote(quote_id)
    return {
        "success": True,
        "valid": result.valid,
        "quote": quote_to_dict(result.quote, time.time()) if result.quote else None,
        "error": result.error.to_dict() if result.error else None,
    }
