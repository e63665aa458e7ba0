"""AssignSavvy History Routes

Endpoints:
- GET /api/history - Saved tool results, newest first
- GET /api/history/{result_id} - One saved result
- DELETE /api/history/{result_id} - Remove a saved result
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from assignsavvy.models.user import UserAccount
from assignsavvy.routes.deps import get_services, get_current_account
from assignsavvy.services.container import CreditServices

router = APIRouter(prefix="/api/history", tags=["History"])


@router.get("")
async def list_history(
    tool_type: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    results = await services.history.list_results(account.user_id, tool_type, limit, offset)
    return {
        "results": results,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{result_id}")
async def get_history_item(
    result_id: str,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    record = await services.history.get_result(account.user_id, result_id)
    if not record:
        raise HTTPException(status_code=404, detail="History item not found")
    return record


@router.delete("/{result_id}")
async def delete_history_item(
    result_id: str,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    """Deleting a result does not refund the credits it used."""
    if not await services.history.delete_result(account.user_id, result_id):
        raise HTTPException(status_code=404, detail="History item not found")
    return {"success": True, "result_id": result_id}
