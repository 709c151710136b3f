"""DeFi vault operation endpoints."""

from fastapi import APIRouter, Depends

from feerelay.api.contracts import DefiOperationRequest
from feerelay.api.deps import get_services
from feerelay.services import Services

router = APIRouter(prefix="/defi", tags=["DeFi"])


@router.get("/vault")
async def get_vault_info(services: Services = Depends(get_services)) -> dict:
    """SY vault totals and APY."""
    return {"success": True, "vault": await services.defi.vault_info()}


@router.get("/vault/{address}")
async def get_vault_balance(address: str, services: Services = Depends(get_services)) -> dict:
    return {"success": True, "balance": await services.defi.vault_balance(address)}


@router.post("/{operation}")
async def execute_operation(
    operation: str,
    request: DefiOperationRequest,
    services: Services = Depends(get_services),
) -> dict:
    """Relay a signed vault operation, e.g. ``vault-deposit`` or ``yield_split``."""
    result = await services.defi.execute(
        operation.replace("-", "_").lower(),
        request.user,
        request.message_fields(),
        request.signature,
        request.sender_raw_transaction,
    )
    return {"success": True, "result": result.to_dict()}
