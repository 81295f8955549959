"""Order placement across the catalog database and the Redis order store."""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis
from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import ORDER_STATUS_PENDING
from errors import Conflict, DatabaseError, Forbidden, NotFound, ValidationError, same_id
from models import Product, new_id
from monitoring import order_amount_histogram, orders_failed_counter, orders_placed_counter
from services.cart_service import CartService
from services.identity_provider import CallerIdentity
from services.product_catalog import ProductCatalog, parse_id

logger = logging.getLogger(__name__)

IDEMPOTENCY_TTL_SECONDS = 24 * 3600


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def buyer_index_key(buyer_id: str) -> str:
    return f"orders:buyer:{buyer_id}"


def seller_index_key(seller_id: str) -> str:
    return f"orders:seller:{seller_id}"


def idempotency_key(buyer_id: str, key: str) -> str:
    return f"order:idempotency:{buyer_id}:{key}"


def is_participant(order: Dict[str, Any], caller_id: str) -> bool:
    """Authorization predicate for reading an order: buyer or involved seller."""
    if same_id(order.get("buyer_id"), caller_id):
        return True
    return any(same_id(item.get("seller_id"), caller_id) for item in order.get("items", []))


class OrderProcessor:
    """
    Places orders.

    An order touches two stores that share no transaction: product stock
    lives in the relational database and the order record in Redis. The
    record is written first and removed again if the stock update fails,
    so a committed stock decrement always has an order behind it.
    ``inventory_applied`` stays false if the process dies between the two
    steps.

    Stock is decremented read-modify-write without a lock, so concurrent
    orders on one product can lose an update.
    """

    def __init__(self, redis_client: redis.Redis, cart_service: CartService, catalog: ProductCatalog):
        """
        Initialize order processor.

        Args:
            redis_client: Redis client holding the order records
            cart_service: Cart service, drained after an order
            catalog: Product catalog for product lookups
        """
        self.redis_client = redis_client
        self.cart_service = cart_service
        self.catalog = catalog
        self.tracer = trace.get_tracer(__name__)

    def snapshot_items(self, db: Session, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Build immutable line items from the submitted cart.

        Known products contribute their current seller, name and price.
        Unknown product ids are kept as submitted and skip the stock update.
        """
        lines = []
        for item in items:
            quantity = int(item.get("quantity") or 0)
            if quantity <= 0:
                raise ValidationError("Item quantity must be at least 1")

            with self.tracer.start_as_current_span("db.query.get_product") as db_span:
                db_span.set_attribute("db.operation", "SELECT")
                db_span.set_attribute("db.table", "products")
                db_span.set_attribute("product.id", str(item.get("product_id")))

                product = self.catalog.find(db, item.get("product_id"))
                db_span.set_attribute("db.rows_returned", 1 if product else 0)

            if product is not None:
                lines.append({
                    "product_id": product.id,
                    "seller_id": product.owner_id,
                    "name": product.name,
                    "quantity": quantity,
                    "price": product.price,
                    "total_price": round(product.price * quantity, 2),
                    "product_found": True
                })
                continue

            logger.warning("Order references an unknown product", extra={
                "product_id": item.get("product_id")
            })
            price = item.get("price")
            total_price = item.get("total_price")
            if total_price is None:
                total_price = round(price * quantity, 2) if price is not None else 0.0
            lines.append({
                "product_id": str(item.get("product_id")),
                "seller_id": item.get("seller_id"),
                "name": item.get("name"),
                "quantity": quantity,
                "price": price,
                "total_price": total_price,
                "product_found": False
            })
        return lines

    def apply_stock(self, db: Session, lines: List[Dict[str, Any]]) -> None:
        """Decrement stock for every known product in one transaction."""
        with self.tracer.start_as_current_span("db.transaction.apply_stock") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")

            for line in lines:
                if not line["product_found"]:
                    continue
                product = db.query(Product).filter(Product.id == line["product_id"]).first()
                if product is None:
                    continue
                old_stock = product.stock
                product.stock = old_stock - line["quantity"]
                if product.stock <= 0:
                    product.is_available = False
                logger.info("Stock updated", extra={
                    "product_id": product.id,
                    "stock_before": old_stock,
                    "stock_after": product.stock
                })
            db.commit()

    def _save(self, order: Dict[str, Any], score: float) -> None:
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.set(order_key(order["id"]), json.dumps(order))
        pipe.zadd(buyer_index_key(order["buyer_id"]), {order["id"]: score})
        for seller_id in order["involved_seller_ids"]:
            pipe.zadd(seller_index_key(seller_id), {order["id"]: score})
        pipe.execute()

    def _discard(self, order: Dict[str, Any], idempotency: Optional[str]) -> None:
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.delete(order_key(order["id"]))
        pipe.zrem(buyer_index_key(order["buyer_id"]), order["id"])
        for seller_id in order["involved_seller_ids"]:
            pipe.zrem(seller_index_key(seller_id), order["id"])
        if idempotency:
            pipe.delete(idempotency)
        pipe.execute()

    def _load(self, order_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis_client.get(order_key(order_id))
        return json.loads(raw) if raw else None

    def place_order(
        self,
        db: Session,
        buyer: CallerIdentity,
        items: List[Dict[str, Any]],
        order_total: float,
        idempotency: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Place an order for the buyer.

        Args:
            db: Database session
            buyer: Authenticated buyer
            items: Submitted line items (product_id, quantity, ...)
            order_total: Total as computed by the buyer's client
            idempotency: Client-chosen key; a retry with the same key
                returns the first order instead of placing another

        Returns:
            The order record

        Raises:
            ValidationError: Empty order or bad quantity
            DatabaseError: Order record or stock update failed
        """
        if not items:
            raise ValidationError("An order needs at least one item")

        claim_key = None
        order_id = new_id()
        if idempotency:
            claim_key = idempotency_key(buyer.id, idempotency)
            if not self.redis_client.set(claim_key, order_id, nx=True, ex=IDEMPOTENCY_TTL_SECONDS):
                existing = self._load(self.redis_client.get(claim_key))
                if existing is not None:
                    logger.info("Replayed order for idempotency key", extra={
                        "order_id": existing["id"],
                        "buyer_id": buyer.id
                    })
                    return existing
                raise Conflict("An order with this idempotency key is already in progress")

        try:
            lines = self.snapshot_items(db, items)
        except Exception:
            # Nothing was recorded yet; a retry with the same key may proceed
            if claim_key:
                self.redis_client.delete(claim_key)
            raise

        now = time.time()
        order = {
            "id": order_id,
            "buyer_id": buyer.id,
            "buyer_email": buyer.email,
            "items": lines,
            "order_total": order_total,
            "status": ORDER_STATUS_PENDING,
            "created_at": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            "involved_seller_ids": sorted({str(line["seller_id"]) for line in lines if line.get("seller_id")}),
            "inventory_applied": False
        }

        # Step 1: durable order record
        with self.tracer.start_as_current_span("cache.insert_order") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("order.id", order_id)
            try:
                self._save(order, now)
            except redis.RedisError as e:
                orders_failed_counter.add(1, {"stage": "record"})
                logger.error("Failed to record order", extra={"buyer_id": buyer.id, "error": str(e)})
                if claim_key:
                    self.redis_client.delete(claim_key)
                raise DatabaseError("Could not record the order")

        # Step 2: inventory, compensated by removing the record
        try:
            self.apply_stock(db, lines)
        except SQLAlchemyError as e:
            db.rollback()
            orders_failed_counter.add(1, {"stage": "inventory"})
            logger.error("Failed to update stock, discarding order", extra={
                "order_id": order_id,
                "buyer_id": buyer.id,
                "error": str(e)
            })
            self._discard(order, claim_key)
            raise DatabaseError("Could not update product stock")

        order["inventory_applied"] = True
        try:
            self.redis_client.set(order_key(order_id), json.dumps(order))
        except redis.RedisError as e:
            logger.warning("Stock applied but order record was not updated", extra={
                "order_id": order_id,
                "buyer_id": buyer.id,
                "error": str(e)
            })

        # Step 3: the cart; the order stands even if this fails
        try:
            self.cart_service.clear_cart(buyer.id)
        except redis.RedisError as e:
            logger.warning("Order placed but cart was not cleared", extra={
                "order_id": order_id,
                "buyer_id": buyer.id,
                "error": str(e)
            })

        orders_placed_counter.add(1, {"item_count": str(len(lines))})
        order_amount_histogram.record(order_total)
        logger.info("Order placed", extra={
            "order_id": order_id,
            "buyer_id": buyer.id,
            "order_total": order_total,
            "item_count": len(lines)
        })
        return order

    def get_order(self, order_id: str, caller_id: str) -> Dict[str, Any]:
        order = self._load(parse_id(order_id, "order"))
        if order is None:
            raise NotFound("Order not found")
        if not is_participant(order, caller_id):
            raise Forbidden("Access denied")
        return order

    def list_for_buyer(self, buyer_id: str) -> List[Dict[str, Any]]:
        """All orders of a buyer, newest first."""
        order_ids = self.redis_client.zrevrange(buyer_index_key(buyer_id), 0, -1)
        orders = []
        for order_id in order_ids:
            order = self._load(order_id)
            if order is not None:
                orders.append(order)
        return orders
