"""Sales API router."""
from typing import List

from fastapi import APIRouter, Depends

from schemas import SaleResponse
from auth import get_current_user
from dependencies import get_sales_ledger
from services.identity_provider import CallerIdentity
from services.sales_ledger import SalesLedger

router = APIRouter(prefix="/sales", tags=["sales"])


@router.get("", response_model=List[SaleResponse])
async def get_sales(
    caller: CallerIdentity = Depends(get_current_user),
    ledger: SalesLedger = Depends(get_sales_ledger)
):
    """The caller's sales: orders containing their products, newest first."""
    return ledger.sales_for_seller(caller.id)
