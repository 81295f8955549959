"""Tests for the product catalog."""
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from errors import DatabaseError, Forbidden, NotFound, StorageError, ValidationError
from models import Product
from services.product_catalog import ImageUpload, ProductFilters, clean_fields, parse_product_id

FORM = {
    "name": "Headlight",
    "description": "Left headlight assembly",
    "price": "120.5",
    "stock": "3",
    "category": "Lighting",
    "condition": "Used",
    "brand": "Bosch",
    "side": "Left",
    "partNumber": "HL-100",
}


def _image(name: str = "front light.png"):
    return {"image": (name, b"\x89PNG fake image", "image/png")}


def test_parse_product_id() -> None:
    assert parse_product_id(" " + "A" * 32 + " ") == "a" * 32
    with pytest.raises(ValidationError):
        parse_product_id("42")


def test_clean_fields_parses_types_and_drops_unknown_keys() -> None:
    cleaned = clean_fields({
        "price": "9.99",
        "stock": "0",
        "is_on_offer": "true",
        "name": "  Mirror ",
        "owner_id": "someone-else",
        "brand": "",
    })
    assert cleaned == {"price": 9.99, "stock": 0, "is_on_offer": True, "name": "Mirror"}

    with pytest.raises(ValidationError):
        clean_fields({"price": "cheap"})
    with pytest.raises(ValidationError):
        clean_fields({"price": "-1"})


class TestCreate:
    def test_create_product(self, client, register_user, bucket) -> None:
        seller = register_user("seller")
        r = client.post("/products", data=FORM, files=_image(), headers=seller["headers"])
        assert r.status_code == 201, r.text
        product = r.json()["product"]
        assert product["ownerId"] == seller["id"]
        assert product["sellerEmail"] == seller["email"]
        assert product["price"] == 120.5
        assert product["stock"] == 3
        assert product["isAvailable"] is True
        assert product["partNumber"] == "HL-100"
        assert product["imageUrl"].startswith("https://cdn.test/marketplace-test/products/")
        assert product["imageUrl"].endswith("_front_light.png")
        assert len(bucket.objects) == 1

    def test_create_requires_auth(self, client) -> None:
        r = client.post("/products", data=FORM, files=_image())
        assert r.status_code == 401

    def test_create_requires_image(self, client, register_user, bucket) -> None:
        seller = register_user("seller")
        r = client.post("/products", data=FORM, headers=seller["headers"])
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"
        assert bucket.objects == {}

    def test_create_requires_fields(self, client, register_user, bucket) -> None:
        seller = register_user("seller")
        form = {key: value for key, value in FORM.items() if key != "price"}
        r = client.post("/products", data=form, files=_image(), headers=seller["headers"])
        assert r.status_code == 400
        assert "price" in r.json()["detail"]
        assert bucket.objects == {}

    def test_storage_failure_writes_no_row(self, client, register_user, bucket, db) -> None:
        seller = register_user("seller")
        bucket.fail_uploads = True
        r = client.post("/products", data=FORM, files=_image(), headers=seller["headers"])
        assert r.status_code == 500
        assert r.json()["code"] == "storage_error"
        assert db.query(Product).count() == 0

    async def test_database_failure_removes_uploaded_image(self, catalog, db, bucket, seller, monkeypatch) -> None:
        def failing_commit():
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(db, "commit", failing_commit)
        fields = {"name": "Mirror", "description": "Side mirror", "price": "10", "category": "Body", "condition": "New"}
        with pytest.raises(DatabaseError):
            await catalog.create(db, seller.id, seller.email, fields, ImageUpload(b"img", "mirror.png", "image/png"))
        assert bucket.objects == {}

    async def test_storage_failure_in_service(self, catalog, db, bucket, seller) -> None:
        bucket.fail_uploads = True
        fields = {"name": "Mirror", "description": "Side mirror", "price": "10", "category": "Body", "condition": "New"}
        with pytest.raises(StorageError):
            await catalog.create(db, seller.id, seller.email, fields, ImageUpload(b"img", "mirror.png"))
        assert db.query(Product).count() == 0


class TestListing:
    def test_pagination_returns_requested_window(self, client, make_product, seller) -> None:
        for price in range(1, 13):
            make_product(seller, name=f"Part {price}", price=float(price))

        r = client.get("/products", params={"sort": "priceAsc", "page": 2, "limit": 5})
        assert r.status_code == 200
        body = r.json()
        assert [p["price"] for p in body["products"]] == [6.0, 7.0, 8.0, 9.0, 10.0]
        assert body["totalProducts"] == 12
        assert body["currentPage"] == 2
        assert body["productsPerPage"] == 5

    def test_default_page_size(self, client, make_product, seller) -> None:
        for price in range(1, 13):
            make_product(seller, price=float(price))
        body = client.get("/products").json()
        assert len(body["products"]) == 9
        assert body["currentPage"] == 1
        assert body["productsPerPage"] == 9

    def test_invalid_paging_falls_back_to_defaults(self, client, make_product, seller) -> None:
        make_product(seller)
        body = client.get("/products", params={"page": "zero", "limit": "-3"}).json()
        assert body["currentPage"] == 1
        assert body["productsPerPage"] == 9

    def test_filters_compose(self, client, make_product, seller, buyer) -> None:
        make_product(seller, name="Brake disc", category="Brakes", condition="New", brand="ATE", price=50.0)
        make_product(seller, name="Brake pad", category="Brakes", condition="Used", brand="ATE", price=20.0)
        make_product(seller, name="Brake hose", category="Brakes", condition="New", brand="TRW", price=15.0)
        make_product(buyer, name="Brake drum", category="Brakes", condition="New", brand="ATE", price=40.0)
        make_product(seller, name="Oil filter", category="Engine", condition="New", brand="ATE", price=8.0)

        r = client.get("/products", params={
            "category": "Brakes",
            "condition": "New",
            "brand": "ATE",
            "sellerId": seller.id,
            "name": "brake",
            "minPrice": "30",
            "maxPrice": "60",
        })
        body = r.json()
        assert body["totalProducts"] == 1
        assert body["products"][0]["name"] == "Brake disc"

    @pytest.mark.parametrize("match_all", ["all", "Todas"])
    def test_match_all_filter_values(self, client, make_product, seller, match_all) -> None:
        make_product(seller, category="Brakes")
        make_product(seller, category="Engine")
        body = client.get("/products", params={"category": match_all}).json()
        assert body["totalProducts"] == 2

    @pytest.mark.parametrize("sort", [None, "oldest"])
    def test_newest_first_by_default(self, client, make_product, seller, sort) -> None:
        make_product(seller, name="January", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        make_product(seller, name="March", created_at=datetime(2024, 3, 1, tzinfo=timezone.utc))
        make_product(seller, name="February", created_at=datetime(2024, 2, 1, tzinfo=timezone.utc))

        params = {"sort": sort} if sort else {}
        body = client.get("/products", params=params).json()
        assert [p["name"] for p in body["products"]] == ["March", "February", "January"]

    def test_sort_price_desc(self, client, make_product, seller) -> None:
        for price in (5.0, 30.0, 12.0):
            make_product(seller, price=price)
        body = client.get("/products", params={"sort": "priceDesc"}).json()
        assert [p["price"] for p in body["products"]] == [30.0, 12.0, 5.0]

    def test_negative_price_filter_is_rejected(self, client) -> None:
        r = client.get("/products", params={"minPrice": "-5"})
        assert r.status_code == 400

    def test_service_listing(self, catalog, db, make_product, seller) -> None:
        make_product(seller, category="Brakes")
        make_product(seller, category="Engine")
        products, total, page, limit = catalog.list(db, ProductFilters(category="Engine"))
        assert total == 1
        assert products[0].category == "Engine"
        assert (page, limit) == (1, 9)


class TestReadWrite:
    def test_get_product(self, client, make_product, seller) -> None:
        product = make_product(seller)
        r = client.get(f"/products/{product.id}")
        assert r.status_code == 200
        assert r.json()["id"] == product.id

    def test_get_unknown_and_malformed(self, client) -> None:
        assert client.get(f"/products/{'f' * 32}").status_code == 404
        r = client.get("/products/not-an-id")
        assert r.status_code == 400

    def test_non_owner_cannot_update_or_delete(self, client, register_user, make_product, db) -> None:
        owner = register_user("seller")
        intruder = register_user("seller")
        product = make_product(owner["identity"], name="Original", price=10.0)

        r = client.put(
            f"/products/{product.id}",
            data={"name": "Hijacked", "ownerId": intruder["id"]},
            headers=intruder["headers"]
        )
        assert r.status_code == 403
        r = client.delete(f"/products/{product.id}", headers=intruder["headers"])
        assert r.status_code == 403

        db.expire_all()
        stored = db.query(Product).filter(Product.id == product.id).one()
        assert stored.name == "Original"
        assert stored.owner_id == owner["id"]

    def test_owner_update_keeps_availability_in_step_with_stock(self, client, register_user, make_product) -> None:
        owner = register_user("seller")
        product = make_product(owner["identity"], stock=2)

        r = client.put(f"/products/{product.id}", data={"stock": "0", "price": "99"}, headers=owner["headers"])
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["stock"] == 0
        assert body["isAvailable"] is False
        assert body["price"] == 99.0

        r = client.put(f"/products/{product.id}", data={"stock": "4"}, headers=owner["headers"])
        assert r.json()["isAvailable"] is True

    def test_update_replaces_image_even_if_old_delete_fails(self, client, register_user, bucket) -> None:
        owner = register_user("seller")
        created = client.post("/products", data=FORM, files=_image("old.png"), headers=owner["headers"]).json()
        product_id = created["product"]["id"]

        bucket.fail_deletes = True
        r = client.put(
            f"/products/{product_id}",
            data={"name": "Headlight v2"},
            files=_image("new.png"),
            headers=owner["headers"]
        )
        assert r.status_code == 200, r.text
        assert r.json()["imageUrl"].endswith("_new.png")
        assert r.json()["name"] == "Headlight v2"
        assert len(bucket.objects) == 2

    def test_update_replaces_image(self, client, register_user, bucket) -> None:
        owner = register_user("seller")
        created = client.post("/products", data=FORM, files=_image("old.png"), headers=owner["headers"]).json()
        product_id = created["product"]["id"]

        r = client.put(f"/products/{product_id}", files=_image("new.png"), headers=owner["headers"])
        assert r.status_code == 200
        assert [name.endswith("_new.png") for name in bucket.objects] == [True]

    def test_delete_removes_row_and_image(self, client, register_user, bucket, db) -> None:
        owner = register_user("seller")
        created = client.post("/products", data=FORM, files=_image(), headers=owner["headers"]).json()
        product_id = created["product"]["id"]

        r = client.delete(f"/products/{product_id}", headers=owner["headers"])
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["deletedProduct"]["id"] == product_id
        assert body["deletedProduct"]["name"] == "Headlight"
        assert bucket.objects == {}
        assert db.query(Product).count() == 0
        assert client.get(f"/products/{product_id}").status_code == 404

    async def test_service_ownership_checks(self, catalog, db, make_product, seller, buyer) -> None:
        product = make_product(seller)
        with pytest.raises(Forbidden):
            await catalog.update(db, product.id, buyer.id, {"price": "1"})
        with pytest.raises(Forbidden):
            await catalog.delete(db, product.id, buyer.id)
        with pytest.raises(NotFound):
            await catalog.delete(db, "0" * 32, seller.id)


class TestImageUrls:
    async def test_object_names_survive_the_public_url(self, storage, bucket) -> None:
        url = await storage.upload(b"img", "a?b.png", "image/png")
        assert "?" not in url
        assert url.endswith("_a%3Fb.png")

        [stored] = bucket.objects
        assert storage.object_name_from_url(url) == stored
        assert await storage.delete(url) is True
        assert bucket.objects == {}

    @pytest.mark.parametrize("url", [
        "",
        "https://placehold.co/600x400?text=abcd",
        "https://elsewhere.test/marketplace-test/products/1_x.png",
        "https://cdn.test/other-bucket/products/1_x.png",
        "https://cdn.test/marketplace-test/avatars/1_x.png",
    ])
    async def test_foreign_urls_are_left_alone(self, storage, url) -> None:
        assert storage.object_name_from_url(url) is None
        assert await storage.delete(url) is False
