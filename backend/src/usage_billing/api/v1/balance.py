"""Account balance API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from usage_billing.api.deps import get_current_user, get_ledger_service
from usage_billing.models.balance_transaction import TransactionType
from usage_billing.schemas.ledger import BalanceReconciliation, BalanceSummary, BalanceTransactionList
from usage_billing.services.ledger_service import LedgerService

router = APIRouter(prefix="/balance", tags=["balance"])


@router.get("", response_model=BalanceSummary)
async def get_balance(
    user_id: UUID = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceSummary:
    """Current account balance of the caller."""
    return BalanceSummary(user_id=user_id, balance=await ledger.get_balance(user_id))


@router.get("/transactions", response_model=BalanceTransactionList)
async def list_transactions(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
    type: TransactionType | None = Query(None, description="Filter by transaction type"),
    user_id: UUID = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceTransactionList:
    """
    List the caller's balance transactions, newest first.

    Each entry records the balance before and after it was applied.
    """
    return await ledger.list_transactions(user_id, page=page, page_size=page_size, type=type)


@router.get("/reconciliation", response_model=BalanceReconciliation)
async def reconcile_balance(
    user_id: UUID = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceReconciliation:
    """Compare the stored balance against the sum of all transactions."""
    return await ledger.reconcile_balance(user_id)
