from fastapi import APIRouter, Depends, Query

from app.core.dependencies import get_current_user, get_ledger_service
from app.models.user import User
from app.schemas.transaction import TransactionResponse
from app.services.ledger import LedgerService

router = APIRouter()


@router.get("/", response_model=list[TransactionResponse])
async def list_transactions(
    limit: int = Query(20, ge=1, le=100, description="Max entries (default 20, max 100)"),
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
):
    """
    List ledger entries for the authenticated user.

    Returns transactions ordered by created_at descending (newest first).
    """
    return await ledger.list_transactions(current_user.id, limit=limit)
