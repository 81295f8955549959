"""Tests for buyer/seller conversations."""
import pytest

from errors import Forbidden, NotFound, ValidationError
from services.conversation_store import ConversationStore, pair_key


def test_pair_key_ignores_participant_order() -> None:
    assert pair_key("p", "a", "b") == pair_key("p", "b", "a")
    assert pair_key("p", "a", "b") != pair_key("q", "a", "b")


class TestConversationStore:
    def test_both_directions_share_one_conversation(self, conversations, db, make_product, seller, buyer) -> None:
        product = make_product(seller)

        first = conversations.start_or_append(db, product.id, buyer, "Is this still available?")
        second = conversations.start_or_append(db, product.id, seller, "Yes it is", receiver_id=buyer.id)

        assert first["conversation_id"] == second["conversation_id"]
        messages = conversations.list_messages(first["conversation_id"], buyer.id)
        assert [m["content"] for m in messages] == ["Is this still available?", "Yes it is"]
        assert [m["sender_id"] for m in messages] == [buyer.id, seller.id]

        assert len(conversations.list_for_user(buyer.id)) == 1
        assert len(conversations.list_for_user(seller.id)) == 1

    def test_separate_products_get_separate_conversations(self, conversations, db, make_product, seller, buyer) -> None:
        first = make_product(seller, name="Mirror")
        second = make_product(seller, name="Bumper")
        a = conversations.start_or_append(db, first.id, buyer, "hi")
        b = conversations.start_or_append(db, second.id, buyer, "hi")
        assert a["conversation_id"] != b["conversation_id"]

        listed = conversations.list_for_user(buyer.id)
        assert {c["product_name"] for c in listed} == {"Mirror", "Bumper"}

    def test_listing_describes_the_other_participant(self, conversations, db, make_product, seller, buyer) -> None:
        product = make_product(seller, name="Radiator")
        conversations.start_or_append(db, product.id, buyer, "x" * 150)

        [conversation] = conversations.list_for_user(buyer.id)
        assert conversation["other_user_id"] == seller.id
        assert conversation["other_user_email"] == seller.email
        assert conversation["last_message"] == "x" * 100
        assert sorted(conversation["participants"]) == sorted([buyer.id, seller.id])

        [mirror] = conversations.list_for_user(seller.id)
        assert mirror["other_user_id"] == buyer.id
        assert mirror["other_user_email"] == buyer.email

    def test_seller_must_name_the_buyer(self, conversations, db, make_product, seller) -> None:
        product = make_product(seller)
        with pytest.raises(ValidationError):
            conversations.start_or_append(db, product.id, seller, "hello")

    def test_unknown_product(self, conversations, db, buyer) -> None:
        with pytest.raises(NotFound):
            conversations.start_or_append(db, "a" * 32, buyer, "hello")

    def test_empty_content(self, conversations, db, make_product, seller, buyer) -> None:
        product = make_product(seller)
        with pytest.raises(ValidationError):
            conversations.start_or_append(db, product.id, buyer, "   ")

    def test_reply_appends(self, conversations, db, make_product, seller, buyer) -> None:
        product = make_product(seller)
        started = conversations.start_or_append(db, product.id, buyer, "first")
        conversations.reply(started["conversation_id"], seller, "second")
        messages = conversations.list_messages(started["conversation_id"], seller.id)
        assert [m["content"] for m in messages] == ["first", "second"]

    def test_unknown_conversation(self, conversations, buyer) -> None:
        with pytest.raises(NotFound):
            conversations.list_messages("0" * 32, buyer.id)
        with pytest.raises(NotFound):
            conversations.reply("0" * 32, buyer, "hi")

    def test_malformed_conversation_id(self, conversations, redis_client, buyer) -> None:
        redis_client.set(pair_key("p", "a", "b"), "0" * 32)
        with pytest.raises(ValidationError):
            conversations.list_messages("pair:p:a:b", buyer.id)
        with pytest.raises(ValidationError):
            conversations.reply("pair:p:a:b", buyer, "hi")

    def test_outsiders_can_read_when_membership_is_not_enforced(
        self, conversations, db, make_product, seller, buyer
    ) -> None:
        product = make_product(seller)
        started = conversations.start_or_append(db, product.id, buyer, "hi")
        assert len(conversations.list_messages(started["conversation_id"], "9" * 32)) == 1

    def test_membership_enforced(self, redis_client, db, make_product, seller, buyer) -> None:
        store = ConversationStore(redis_client, enforce_membership=True)
        product = make_product(seller)
        started = store.start_or_append(db, product.id, buyer, "hi")

        outsider = "9" * 32
        with pytest.raises(Forbidden):
            store.list_messages(started["conversation_id"], outsider)
        assert len(store.list_messages(started["conversation_id"], seller.id)) == 1


class TestMessagesApi:
    def test_send_and_read(self, client, register_user, make_product) -> None:
        seller = register_user("seller")
        buyer = register_user("buyer")
        product = make_product(seller["identity"], name="Gearbox")

        r = client.post("/messages/send", json={
            "productId": product.id,
            "productName": "Gearbox",
            "content": "Price negotiable?"
        }, headers=buyer["headers"])
        assert r.status_code == 201, r.text
        conversation_id = r.json()["conversationId"]

        r = client.post("/messages/send", json={
            "productId": product.id,
            "content": "A little",
            "receiverId": buyer["id"]
        }, headers=seller["headers"])
        assert r.status_code == 201
        assert r.json()["conversationId"] == conversation_id

        r = client.post(f"/messages/{conversation_id}/messages", json={"content": "Deal"}, headers=buyer["headers"])
        assert r.status_code == 201

        r = client.get("/messages/conversations", headers=seller["headers"])
        assert r.status_code == 200
        [conversation] = r.json()
        assert conversation["id"] == conversation_id
        assert conversation["otherUserId"] == buyer["id"]
        assert conversation["otherUserEmail"] == buyer["email"]
        assert conversation["lastMessage"] == "Deal"

        r = client.get(f"/messages/{conversation_id}/messages", headers=seller["headers"])
        assert r.status_code == 200
        messages = r.json()
        assert [m["content"] for m in messages] == ["Price negotiable?", "A little", "Deal"]
        assert messages[0]["senderEmail"] == buyer["email"]
        assert "T" in messages[0]["timestamp"]

    def test_send_requires_auth(self, client) -> None:
        r = client.post("/messages/send", json={"productId": "a" * 32, "content": "hi"})
        assert r.status_code == 401

    def test_empty_content_is_rejected(self, client, register_user, make_product) -> None:
        seller = register_user("seller")
        buyer = register_user("buyer")
        product = make_product(seller["identity"])
        r = client.post("/messages/send", json={"productId": product.id, "content": ""}, headers=buyer["headers"])
        assert r.status_code == 400

    def test_unknown_conversation(self, client, register_user) -> None:
        buyer = register_user("buyer")
        r = client.get(f"/messages/{'0' * 32}/messages", headers=buyer["headers"])
        assert r.status_code == 404

    def test_malformed_conversation_id(self, client, register_user) -> None:
        buyer = register_user("buyer")
        client.app.state.redis_client.set(pair_key("p", "a", "b"), "0" * 32)

        r = client.get("/messages/pair:p:a:b/messages", headers=buyer["headers"])
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"
        r = client.post("/messages/pair:p:a:b/messages", json={"content": "hi"}, headers=buyer["headers"])
        assert r.status_code == 400
