"""Buyer/seller conversation threads kept in Redis.

Key layout:

- ``conversation:{id}``: hash with the conversation header
- ``conversation:{id}:messages``: list of JSON messages in send order
- ``conversation:pair:{product}:{a}:{b}``: id of the conversation for a
  product and an unordered participant pair (``a < b``)
- ``conversations:user:{uid}``: sorted set of conversation ids scored by
  last activity
"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import redis
from opentelemetry import trace
from sqlalchemy.orm import Session

from config import LAST_MESSAGE_SNIPPET_LENGTH
from errors import Forbidden, NotFound, ValidationError, same_id
from models import Product, User, new_id
from monitoring import conversations_started_counter, messages_sent_counter
from services.identity_provider import CallerIdentity
from services.product_catalog import parse_id, parse_product_id

logger = logging.getLogger(__name__)


def to_iso(timestamp: Any) -> str:
    return datetime.fromtimestamp(float(timestamp), tz=timezone.utc).isoformat()


def conversation_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def messages_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:messages"


def pair_key(product_id: str, first: str, second: str) -> str:
    low, high = sorted((str(first), str(second)))
    return f"conversation:pair:{product_id}:{low}:{high}"


def user_index_key(user_id: str) -> str:
    return f"conversations:user:{user_id}"


class ConversationStore:
    """Append-only message threads between a product's seller and a buyer."""

    def __init__(self, redis_client: redis.Redis, enforce_membership: bool = False):
        """
        Args:
            redis_client: Redis client holding the threads
            enforce_membership: Restrict reading and replying to participants
        """
        self.redis_client = redis_client
        self.enforce_membership = enforce_membership
        self.tracer = trace.get_tracer(__name__)

    def _load(self, conversation_id: str) -> Dict[str, Any]:
        raw = self.redis_client.hgetall(conversation_key(parse_id(conversation_id, "conversation")))
        if not raw:
            raise NotFound("Conversation not found")
        conversation = dict(raw)
        conversation["participants"] = json.loads(conversation.get("participants", "[]"))
        conversation["participant_emails"] = json.loads(conversation.get("participant_emails", "{}"))
        return conversation

    def _check_member(self, conversation: Dict[str, Any], user_id: str) -> None:
        if not self.enforce_membership:
            return
        if not any(same_id(participant, user_id) for participant in conversation["participants"]):
            raise Forbidden("Not a participant of this conversation")

    def _lookup_email(self, db: Session, user_id: str) -> Optional[str]:
        user = db.query(User).filter(User.identity_id == str(user_id)).first()
        return user.email if user else None

    def _resolve_counterpart(
        self,
        product: Product,
        sender_id: str,
        receiver_id: Optional[str]
    ) -> str:
        if not same_id(product.owner_id, sender_id):
            return product.owner_id
        # The seller is writing: the buyer has to be named explicitly
        if not receiver_id or same_id(receiver_id, sender_id):
            raise ValidationError("receiverId is required when messaging about your own product")
        return str(receiver_id).strip()

    def _open(
        self,
        db: Session,
        product: Product,
        product_name: Optional[str],
        sender: CallerIdentity,
        counterpart_id: str
    ) -> Tuple[str, bool]:
        """Return the conversation id for the pair, creating it if needed."""
        key = pair_key(product.id, sender.id, counterpart_id)
        existing = self.redis_client.get(key)
        if existing:
            return existing, False

        counterpart_email = self._lookup_email(db, counterpart_id)
        if counterpart_email is None and same_id(counterpart_id, product.owner_id):
            counterpart_email = product.seller_email

        conversation_id = new_id()
        now = time.time()
        self.redis_client.hset(conversation_key(conversation_id), mapping={
            "id": conversation_id,
            "product_id": product.id,
            "product_name": product_name or product.name,
            "participants": json.dumps([sender.id, counterpart_id]),
            "participant_emails": json.dumps({
                sender.id: sender.email,
                counterpart_id: counterpart_email
            }),
            "created_at": now,
            "last_message_at": now,
            "last_message": ""
        })

        # Claim the pair atomically; a concurrent sender may have won
        if not self.redis_client.set(key, conversation_id, nx=True):
            self.redis_client.delete(conversation_key(conversation_id))
            return self.redis_client.get(key), False

        conversations_started_counter.add(1)
        logger.info("Conversation created", extra={
            "conversation_id": conversation_id,
            "product_id": product.id
        })
        return conversation_id, True

    def _append(
        self,
        conversation_id: str,
        participants: List[str],
        sender: CallerIdentity,
        content: str
    ) -> str:
        now = time.time()
        message_id = new_id()
        message = {
            "id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender.id,
            "sender_email": sender.email,
            "content": content,
            "timestamp": now
        }

        with self.tracer.start_as_current_span("cache.append_message") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("conversation.id", conversation_id)

            pipe = self.redis_client.pipeline()
            pipe.rpush(messages_key(conversation_id), json.dumps(message))
            pipe.hset(conversation_key(conversation_id), mapping={
                "last_message_at": now,
                "last_message": content[:LAST_MESSAGE_SNIPPET_LENGTH]
            })
            for participant in participants:
                pipe.zadd(user_index_key(participant), {conversation_id: now})
            pipe.execute()

        messages_sent_counter.add(1)
        return message_id

    def start_or_append(
        self,
        db: Session,
        product_id: str,
        sender: CallerIdentity,
        content: str,
        product_name: Optional[str] = None,
        receiver_id: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Send a message about a product.

        The first message between two users about a product opens the
        conversation; later ones, from either side, append to it.

        Returns:
            Conversation and message ids
        """
        if not content or not content.strip():
            raise ValidationError("Message content is required")

        product = db.query(Product).filter(Product.id == parse_product_id(product_id)).first()
        if product is None:
            raise NotFound("Product not found")

        counterpart_id = self._resolve_counterpart(product, sender.id, receiver_id)
        conversation_id, _ = self._open(db, product, product_name, sender, counterpart_id)
        message_id = self._append(conversation_id, [sender.id, counterpart_id], sender, content)

        logger.info("Message sent", extra={
            "conversation_id": conversation_id,
            "message_id": message_id,
            "sender_id": sender.id
        })
        return {"conversation_id": conversation_id, "message_id": message_id}

    def reply(self, conversation_id: str, sender: CallerIdentity, content: str) -> Dict[str, str]:
        """Append a message to an existing conversation."""
        if not content or not content.strip():
            raise ValidationError("Message content is required")
        conversation = self._load(conversation_id)
        self._check_member(conversation, sender.id)
        message_id = self._append(conversation["id"], conversation["participants"], sender, content)
        return {"conversation_id": conversation["id"], "message_id": message_id}

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Conversations the user takes part in, most recent activity first."""
        with self.tracer.start_as_current_span("cache.list_conversations") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("user.id", user_id)

            conversation_ids = self.redis_client.zrevrange(user_index_key(user_id), 0, -1)
            cache_span.set_attribute("cache.items_returned", len(conversation_ids))

        conversations = []
        for conversation_id in conversation_ids:
            try:
                conversation = self._load(conversation_id)
            except NotFound:
                logger.warning("Dangling conversation index entry", extra={
                    "conversation_id": conversation_id,
                    "user_id": user_id
                })
                continue
            participants = conversation["participants"]
            other_user_id = next(
                (participant for participant in participants if not same_id(participant, user_id)),
                user_id
            )
            conversations.append({
                "id": conversation["id"],
                "product_id": conversation["product_id"],
                "product_name": conversation.get("product_name"),
                "participants": participants,
                "other_user_id": other_user_id,
                "other_user_email": conversation["participant_emails"].get(other_user_id),
                "last_message": conversation.get("last_message"),
                "last_message_at": to_iso(conversation["last_message_at"]),
                "created_at": to_iso(conversation["created_at"])
            })
        return conversations

    def list_messages(self, conversation_id: str, caller_id: str) -> List[Dict[str, Any]]:
        """Messages of a conversation, oldest first."""
        conversation = self._load(conversation_id)
        self._check_member(conversation, caller_id)

        raw_messages = self.redis_client.lrange(messages_key(conversation["id"]), 0, -1)
        messages = [json.loads(raw) for raw in raw_messages]
        messages.sort(key=lambda message: message["timestamp"])
        for message in messages:
            message["timestamp"] = to_iso(message["timestamp"])
        return messages
