"""Transfer API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from feerelay.api.contracts import CancelRequest, TransferCreateRequest, transfer_to_dict
from feerelay.api.deps import get_services
from feerelay.ledger.models import TransferStatus
from feerelay.services import Services, TransferRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transfer", tags=["Transfers"])


@router.post("", status_code=201)
async def create_transfer(
    request: TransferCreateRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Execute a quoted transfer signed by the sender.

    Returns 201 once COMPLETED, 202 while the outcome is still unknown
    (reconcile later) and 400 with the FAILED transfer otherwise.
    """
    transfer = await services.transfers.create_transfer(
        TransferRequest(
            quote_id=request.quote_id,
            sender=request.sender,
            recipient=request.recipient,
            signature=request.signature,
            nonce=request.nonce,
            deadline=request.deadline,
            raw_transaction=request.sender_raw_transaction,
        )
    )
    data = transfer_to_dict(transfer)

    if transfer.status == TransferStatus.COMPLETED.value:
        return JSONResponse(status_code=201, content={"success": True, "transfer": data})
    if transfer.status == TransferStatus.PROCESSING.value:
        return JSONResponse(status_code=202, content={"success": True, "transfer": data})
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": data["error"], "transfer": data},
    )


@router.get("/user/{address}")
async def get_user_transfers(
    address: str,
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
) -> dict:
    """Transfers sent or received by an address, newest first."""
    transfers = await services.transfers.get_user_transfers(address, limit)
    return {
        "success": True,
        "transfers": [transfer_to_dict(t) for t in transfers],
        "count": len(transfers),
    }


@router.get("/{transfer_id}")
async def get_transfer(transfer_id: str, services: Services = Depends(get_services)) -> dict:
    transfer = await services.transfers.get_transfer(transfer_id)
    return {"success": True, "transfer": transfer_to_dict(transfer)}


@router.post("/{transfer_id}/cancel")
async def cancel_transfer(
    transfer_id: str,
    request: Optional[CancelRequest] = None,
    services: Services = Depends(get_services),
) -> dict:
    """Cancel a transfer that has not been submitted yet."""
    reason = request.reason if request else None
    transfer = await services.transfers.cancel_transfer(transfer_id, reason)
    return {"success": True, "transfer": transfer_to_dict(transfer)}


@router.post("/{transfer_id}/reconcile")
async def reconcile_transfer(transfer_id: str, services: Services = Depends(get_services)) -> dict:
    """Re-query the receipt of a transfer whose confirmation timed out."""
    transfer = await services.transfers.reconcile_transfer(transfer_id)
    return {"success": True, "transfer": transfer_to_dict(transfer)}
