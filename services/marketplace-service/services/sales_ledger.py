"""Seller view over placed orders."""
import json
import logging
from typing import Any, Dict, List

import redis

from errors import same_id
from services.order_processor import order_key, seller_index_key

logger = logging.getLogger(__name__)


class SalesLedger:
    """Read-only projection of orders onto the sellers that took part in them."""

    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    def sales_for_seller(self, seller_id: str) -> List[Dict[str, Any]]:
        """
        Orders containing the seller's products, newest first.

        Each sale keeps only the seller's own line items and their subtotal.
        """
        order_ids = self.redis_client.zrevrange(seller_index_key(seller_id), 0, -1)
        sales = []
        for order_id in order_ids:
            raw = self.redis_client.get(order_key(order_id))
            if raw is None:
                continue
            order = json.loads(raw)
            items = [item for item in order["items"] if same_id(item.get("seller_id"), seller_id)]
            if not items:
                continue
            sales.append({
                "order_id": order["id"],
                "created_at": order["created_at"],
                "buyer_email": order.get("buyer_email"),
                "items": items,
                "sale_total": round(sum(item.get("total_price") or 0 for item in items), 2)
            })

        logger.debug("Sales loaded", extra={"seller_id": seller_id, "sale_count": len(sales)})
        return sales
