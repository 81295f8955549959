"""Dependency injection for services."""
import httpx
import redis
from fastapi import Depends, Request

from config import (
    BLOB_STORAGE_API_URL,
    BLOB_STORAGE_BUCKET,
    BLOB_STORAGE_PUBLIC_URL,
    BLOB_STORAGE_TOKEN,
    ENFORCE_CONVERSATION_MEMBERSHIP,
    PRODUCT_IMAGE_PREFIX
)
from services.blob_storage import BlobStorageClient
from services.cart_service import CartService
from services.conversation_store import ConversationStore
from services.identity_provider import IdentityProvider
from services.order_processor import OrderProcessor
from services.product_catalog import ProductCatalog
from services.sales_ledger import SalesLedger
from services.user_service import UserService


def get_redis(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_identity_provider(request: Request) -> IdentityProvider:
    """Get identity provider from app state."""
    return request.app.state.identity_provider


def get_user_service(
    identity_provider: IdentityProvider = Depends(get_identity_provider)
) -> UserService:
    return UserService(identity_provider)


def get_blob_storage(http_client: httpx.AsyncClient = Depends(get_http_client)) -> BlobStorageClient:
    """Get storage client for product images."""
    return BlobStorageClient(
        http_client,
        bucket=BLOB_STORAGE_BUCKET,
        api_url=BLOB_STORAGE_API_URL,
        public_url=BLOB_STORAGE_PUBLIC_URL,
        token=BLOB_STORAGE_TOKEN or None,
        prefix=PRODUCT_IMAGE_PREFIX
    )


def get_product_catalog(storage: BlobStorageClient = Depends(get_blob_storage)) -> ProductCatalog:
    return ProductCatalog(storage)


def get_cart_service(redis_client: redis.Redis = Depends(get_redis)) -> CartService:
    """Get cart service instance."""
    return CartService(redis_client)


def get_conversation_store(redis_client: redis.Redis = Depends(get_redis)) -> ConversationStore:
    return ConversationStore(redis_client, enforce_membership=ENFORCE_CONVERSATION_MEMBERSHIP)


def get_order_processor(
    redis_client: redis.Redis = Depends(get_redis),
    cart_service: CartService = Depends(get_cart_service),
    catalog: ProductCatalog = Depends(get_product_catalog)
) -> OrderProcessor:
    """Get order processor instance."""
    return OrderProcessor(redis_client, cart_service, catalog)


def get_sales_ledger(redis_client: redis.Redis = Depends(get_redis)) -> SalesLedger:
    return SalesLedger(redis_client)
