"""Orders API router."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from schemas import OrderResponse, OrdersListResponse, PlaceOrderRequest, PlaceOrderResponse
from auth import get_current_user
from dependencies import get_order_processor
from services.identity_provider import CallerIdentity
from services.order_processor import OrderProcessor

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=PlaceOrderResponse, status_code=201)
async def place_order(
    request: PlaceOrderRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    order_processor: OrderProcessor = Depends(get_order_processor)
):
    """
    Place an order - requires authentication.

    Decrements stock for each known product, records the order and empties
    the caller's cart. Retrying with the same ``Idempotency-Key`` returns
    the first order.
    """
    order = order_processor.place_order(
        db=db,
        buyer=caller,
        items=[item.model_dump() for item in request.items],
        order_total=request.order_total,
        idempotency=idempotency_key
    )

    span = trace.get_current_span()
    span.set_attribute("order.id", order["id"])
    span.set_attribute("order.item_count", len(order["items"]))
    span.set_attribute("order.total", order["order_total"])

    return {"message": "Order placed", "order_id": order["id"]}


@router.get("", response_model=OrdersListResponse)
async def get_orders(
    caller: CallerIdentity = Depends(get_current_user),
    order_processor: OrderProcessor = Depends(get_order_processor)
):
    """Get user's orders - requires authentication."""
    return {"orders": order_processor.list_for_buyer(caller.id)}


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str = Path(..., description="Order ID"),
    caller: CallerIdentity = Depends(get_current_user),
    order_processor: OrderProcessor = Depends(get_order_processor)
):
    """Get an order - only its buyer or a seller in it may read it."""
    return order_processor.get_order(order_id, caller.id)
