"""Cart management service."""
import logging
from typing import Any, Dict, List, Tuple
from sqlalchemy.orm import Session
import redis
from opentelemetry import trace

from errors import NotFound
from models import Product
from services.product_catalog import parse_product_id

logger = logging.getLogger(__name__)


def cart_key(user_id: str) -> str:
    return f"cart:{user_id}"


class CartService:
    """Service for managing shopping carts kept in Redis."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize cart service.

        Args:
            redis_client: Redis client holding the carts
        """
        self.redis_client = redis_client
        self.tracer = trace.get_tracer(__name__)

    def add_to_cart(
        self,
        db: Session,
        user_id: str,
        product_id: str,
        quantity: int
    ) -> Dict[str, Any]:
        """
        Add item to user's cart.

        Quantities for a product already in the cart accumulate. Stock is
        not checked here; the order processor deals with it at order time.

        Args:
            db: Database session
            user_id: User identifier
            product_id: Product identifier
            quantity: Quantity to add

        Returns:
            Result with cart item details

        Raises:
            NotFound: If product not found
        """
        product_id = parse_product_id(product_id)
        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            product = db.query(Product).filter(Product.id == product_id).first()
            db_span.set_attribute("db.rows_returned", 1 if product else 0)

        if product is None:
            raise NotFound("Product not found")

        key = cart_key(user_id)
        with self.tracer.start_as_current_span("cache.hincrby") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "HINCRBY")
            cache_span.set_attribute("cache.key", key)

            new_quantity = self.redis_client.hincrby(key, product_id, quantity)

        logger.info("Added product to cart", extra={
            "user_id": user_id,
            "product_id": product_id,
            "product_name": product.name,
            "quantity": quantity
        })

        return {
            "product_id": product_id,
            "product_name": product.name,
            "quantity": int(new_quantity)
        }

    def get_cart_items(self, user_id: str) -> List[Tuple[str, int]]:
        """
        Get (product id, quantity) pairs in the user's cart.

        Args:
            user_id: User identifier
        """
        key = cart_key(user_id)
        with self.tracer.start_as_current_span("cache.hgetall") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "HGETALL")
            cache_span.set_attribute("cache.key", key)

            raw = self.redis_client.hgetall(key)

        return sorted((product_id, int(quantity)) for product_id, quantity in raw.items())

    def get_cart(self, db: Session, user_id: str) -> Dict[str, Any]:
        """
        Get user's cart contents priced at current catalog prices.

        Items whose product has been deleted are left out.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Cart contents with items and total
        """
        items = []
        total = 0.0

        for product_id, quantity in self.get_cart_items(user_id):
            product = db.query(Product).filter(Product.id == product_id).first()
            if product is None:
                continue
            subtotal = product.price * quantity
            total += subtotal
            items.append({
                "product_id": product.id,
                "product_name": product.name,
                "price": product.price,
                "quantity": quantity,
                "subtotal": subtotal
            })

        return {
            "user_id": user_id,
            "items": items,
            "total": total
        }

    def clear_cart(self, user_id: str) -> None:
        """
        Clear user's cart.

        Args:
            user_id: User identifier
        """
        key = cart_key(user_id)
        with self.tracer.start_as_current_span("cache.delete") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "DELETE")
            cache_span.set_attribute("cache.key", key)

            self.redis_client.delete(key)
