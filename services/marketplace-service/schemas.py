"""Pydantic schemas for request/response validation.

Wire format is camelCase; attributes stay snake_case.
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional


class CamelModel(BaseModel):
    """Base schema serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Users

class RegisterRequest(CamelModel):
    """Schema for registering a user."""
    email: str
    password: str
    name: Optional[str] = None
    user_type: Optional[str] = None


class RegisterResponse(CamelModel):
    message: str
    user_id: str
    email: str
    token: str


class LoginRequest(CamelModel):
    """Schema for logging in."""
    email: str
    password: str


class LoginResponse(CamelModel):
    message: str
    token: str
    user_id: str
    email: str
    user_type: str


class ProfileResponse(CamelModel):
    user_id: str
    email: str
    name: Optional[str] = None
    user_type: str
    created_at: Optional[datetime] = None


# Products

class ProductResponse(CamelModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    owner_id: str
    seller_email: str
    name: str
    description: str
    price: float
    stock: int
    is_available: bool
    category: str
    condition: str
    brand: Optional[str] = None
    side: Optional[str] = None
    part_number: Optional[str] = None
    is_on_offer: bool = False
    original_price: Optional[float] = None
    discount_percentage: Optional[float] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductCreatedResponse(CamelModel):
    message: str
    product: ProductResponse


class ProductDeletedResponse(CamelModel):
    message: str
    deleted_product: ProductResponse


class ProductListResponse(CamelModel):
    """Schema for a page of products."""
    products: List[ProductResponse]
    total_products: int
    current_page: int
    products_per_page: int


# Messages

class SendMessageRequest(CamelModel):
    product_id: str
    product_name: Optional[str] = None
    content: str = Field(..., min_length=1)
    receiver_id: Optional[str] = None


class ReplyRequest(CamelModel):
    content: str = Field(..., min_length=1)


class MessageSentResponse(CamelModel):
    message: str
    conversation_id: str
    message_id: str


class ConversationResponse(CamelModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    participants: List[str]
    other_user_id: str
    other_user_email: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: str
    created_at: str


class MessageResponse(CamelModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_email: Optional[str] = None
    content: str
    timestamp: str


# Cart

class AddToCartRequest(CamelModel):
    """Schema for add to cart request."""
    product_id: str
    quantity: int = Field(1, gt=0)


class AddToCartResponse(CamelModel):
    """Schema for add to cart response."""
    message: str
    product_id: str
    product_name: str
    quantity: int


class CartItemResponse(CamelModel):
    """Schema for cart item in response."""
    product_id: str
    product_name: str
    price: float
    quantity: int
    subtotal: float


class CartResponse(CamelModel):
    """Schema for cart response."""
    user_id: str
    items: List[CartItemResponse]
    total: float


# Orders

class OrderItemRequest(CamelModel):
    """A line item as submitted by the buyer's client."""
    product_id: str
    quantity: int = Field(..., gt=0)
    seller_id: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    total_price: Optional[float] = None


class PlaceOrderRequest(CamelModel):
    """Schema for placing an order."""
    items: List[OrderItemRequest] = Field(..., min_length=1)
    order_total: float = Field(..., ge=0)


class PlaceOrderResponse(CamelModel):
    message: str
    order_id: str


class OrderItemResponse(CamelModel):
    product_id: str
    seller_id: Optional[str] = None
    name: Optional[str] = None
    quantity: int
    price: Optional[float] = None
    total_price: float
    product_found: bool


class OrderResponse(CamelModel):
    """Schema for order response."""
    id: str
    buyer_id: str
    buyer_email: Optional[str] = None
    items: List[OrderItemResponse]
    order_total: float
    status: str
    created_at: str
    inventory_applied: bool


class OrdersListResponse(CamelModel):
    """Schema for orders list response."""
    orders: List[OrderResponse]


class SaleResponse(CamelModel):
    order_id: str
    created_at: str
    buyer_email: Optional[str] = None
    items: List[OrderItemResponse]
    sale_total: float
