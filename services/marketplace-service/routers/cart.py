"""Cart API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import AddToCartRequest, AddToCartResponse, CartResponse
from auth import get_current_user
from dependencies import get_cart_service
from services.cart_service import CartService
from services.identity_provider import CallerIdentity

router = APIRouter(prefix="/cart", tags=["cart"])


@router.post("/items", response_model=AddToCartResponse, status_code=201)
async def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add item to cart - requires authentication."""
    result = cart_service.add_to_cart(
        db=db,
        user_id=caller.id,
        product_id=request.product_id,
        quantity=request.quantity
    )
    return {"message": "Item added to cart", **result}


@router.get("", response_model=CartResponse)
async def get_cart(
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get user's cart - requires authentication."""
    return cart_service.get_cart(db, caller.id)
