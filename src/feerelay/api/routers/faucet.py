"""Test-token faucet endpoint."""

from fastapi import APIRouter, Depends

from feerelay.api.contracts import FaucetRequest
from feerelay.api.deps import get_services
from feerelay.services import Services

router = APIRouter(prefix="/faucet", tags=["Faucet"])


@router.post("")
async def claim(request: FaucetRequest, services: Services = Depends(get_services)) -> dict:
    """Mint test tokens to a user who signed a faucet claim."""
    result = await services.faucet.claim(
        request.user, request.amount, request.nonce, request.deadline, request.signature
    )
    return {"success": True, "result": result.to_dict()}
