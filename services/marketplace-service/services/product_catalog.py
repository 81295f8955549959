"""Product catalog service."""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import DEFAULT_PAGE_SIZE, MATCH_ALL_FILTER_VALUES
from errors import DatabaseError, Forbidden, NotFound, ValidationError, same_id
from models import Product
from monitoring import products_created_counter, products_deleted_counter
from services.blob_storage import BlobStorageClient

logger = logging.getLogger(__name__)

ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

REQUIRED_FIELDS = ("name", "description", "price", "category", "condition")

# Fields a seller may set through create/update, with their parsers
TEXT_FIELDS = ("name", "description", "category", "condition", "brand", "side", "part_number")
FLOAT_FIELDS = ("price", "original_price", "discount_percentage")
INT_FIELDS = ("stock",)
BOOL_FIELDS = ("is_available", "is_on_offer")

SORT_OPTIONS = {
    "priceAsc": (Product.price.asc(),),
    "priceDesc": (Product.price.desc(),),
    "recent": (Product.created_at.desc(),),
}


@dataclass
class ImageUpload:
    """An uploaded image held in memory."""
    data: bytes
    filename: str
    content_type: Optional[str] = None


@dataclass
class ProductFilters:
    """Query filters for the product listing."""
    name: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    brand: Optional[str] = None
    seller_id: Optional[str] = None
    min_price: Optional[str] = None
    max_price: Optional[str] = None


def parse_id(value: str, kind: str) -> str:
    """Normalize a 32-hex identifier, raising ValidationError when malformed."""
    normalized = str(value or "").strip().lower()
    if not ID_PATTERN.match(normalized):
        raise ValidationError(f"Malformed {kind} id: {value}")
    return normalized


def parse_product_id(product_id: str) -> str:
    return parse_id(product_id, "product")


def _parse_float(field: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def _parse_int(field: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def _parse_bool(field: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "on"}:
        return True
    if text in {"false", "0", "no", "off"}:
        return False
    raise ValidationError(f"{field} must be a boolean")


def _positive_int_or(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def is_owner(product: Product, caller_id: str) -> bool:
    """Authorization predicate for product writes."""
    return same_id(product.owner_id, caller_id)


def clean_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Parse raw form values into typed column values, ignoring unknown keys."""
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if key in TEXT_FIELDS:
            text = str(value).strip()
            if text:
                cleaned[key] = text
        elif key in FLOAT_FIELDS:
            if str(value).strip() != "":
                cleaned[key] = _parse_float(key, value)
        elif key in INT_FIELDS:
            if str(value).strip() != "":
                cleaned[key] = _parse_int(key, value)
        elif key in BOOL_FIELDS:
            cleaned[key] = _parse_bool(key, value)
    return cleaned


class ProductCatalog:
    """Service for product listings and their images."""

    def __init__(self, storage: BlobStorageClient):
        """
        Initialize product catalog.

        Args:
            storage: Client for the image bucket
        """
        self.storage = storage
        self.tracer = trace.get_tracer(__name__)

    async def create(
        self,
        db: Session,
        owner_id: str,
        owner_email: Optional[str],
        fields: Dict[str, Any],
        image: Optional[ImageUpload]
    ) -> Product:
        """
        Create a product listing owned by the caller.

        Args:
            db: Database session
            owner_id: Caller id, becomes the product owner
            owner_email: Caller email, shown to buyers
            fields: Raw product fields
            image: Uploaded product image

        Returns:
            The persisted product

        Raises:
            ValidationError: Missing required field or image
            StorageError: Image upload failed; nothing was written
            DatabaseError: Row write failed; the uploaded image is removed
        """
        values = clean_fields(fields)
        missing = [name for name in REQUIRED_FIELDS if name not in values]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if image is None or not image.data:
            raise ValidationError("No image was uploaded")

        with self.tracer.start_as_current_span("storage.upload_image"):
            image_url = await self.storage.upload(image.data, image.filename, image.content_type)

        values.setdefault("stock", 1)
        values.setdefault("is_available", values["stock"] > 0)

        with self.tracer.start_as_current_span("db.query.insert_product") as db_span:
            db_span.set_attribute("db.operation", "INSERT")
            db_span.set_attribute("db.table", "products")

            product = Product(
                owner_id=str(owner_id),
                seller_email=owner_email or "",
                image_url=image_url,
                **values
            )
            try:
                db.add(product)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to save product", extra={"owner_id": owner_id, "error": str(e)})
                await self.storage.delete_quietly(image_url)
                raise DatabaseError("Could not create the product")
            db.refresh(product)
            db_span.set_attribute("product.id", product.id)

        products_created_counter.add(1, {"category": product.category})
        logger.info("Product created", extra={
            "product_id": product.id,
            "owner_id": owner_id,
            "category": product.category
        })
        return product

    def list(
        self,
        db: Session,
        filters: ProductFilters,
        page: Any = None,
        page_size: Any = None,
        sort: Optional[str] = None
    ) -> Tuple[List[Product], int, int, int]:
        """
        Filter, sort and paginate products.

        Returns:
            (products on the page, total matches, page number, page size)
        """
        query = db.query(Product)

        if filters.name:
            query = query.filter(Product.name.ilike(f"%{filters.name}%"))
        for column, value in (
            (Product.category, filters.category),
            (Product.condition, filters.condition),
            (Product.brand, filters.brand),
        ):
            if value and value.strip().lower() not in MATCH_ALL_FILTER_VALUES:
                query = query.filter(column == value)
        if filters.seller_id:
            query = query.filter(Product.owner_id == str(filters.seller_id).strip())
        if filters.min_price not in (None, ""):
            query = query.filter(Product.price >= _parse_float("minPrice", filters.min_price))
        if filters.max_price not in (None, ""):
            query = query.filter(Product.price <= _parse_float("maxPrice", filters.max_price))

        page_number = _positive_int_or(page, 1)
        limit = _positive_int_or(page_size, DEFAULT_PAGE_SIZE)
        order_by = SORT_OPTIONS.get(sort or "recent", SORT_OPTIONS["recent"])

        with self.tracer.start_as_current_span("db.query.list_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")

            total = query.count()
            products = (
                query.order_by(*order_by, Product.id.asc())
                .offset((page_number - 1) * limit)
                .limit(limit)
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(products))

        return products, total, page_number, limit

    def find(self, db: Session, product_id: str) -> Optional[Product]:
        """Load a product, or None for unknown and malformed ids."""
        try:
            normalized = parse_product_id(product_id)
        except ValidationError:
            return None
        return db.query(Product).filter(Product.id == normalized).first()

    def get(self, db: Session, product_id: str) -> Product:
        normalized = parse_product_id(product_id)
        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", normalized)

            product = db.query(Product).filter(Product.id == normalized).first()
        if product is None:
            raise NotFound("Product not found")
        return product

    def _get_owned(self, db: Session, product_id: str, caller_id: str) -> Product:
        product = self.get(db, product_id)
        if not is_owner(product, caller_id):
            logger.warning("Ownership check failed", extra={
                "product_id": product.id,
                "caller_id": caller_id
            })
            raise Forbidden("Access denied")
        return product

    async def update(
        self,
        db: Session,
        product_id: str,
        caller_id: str,
        fields: Dict[str, Any],
        image: Optional[ImageUpload] = None
    ) -> Product:
        """
        Update a product owned by the caller.

        A new image replaces the old one; the old blob is deleted on a
        best-effort basis.
        """
        product = self._get_owned(db, product_id, caller_id)
        values = clean_fields(fields)

        if "stock" in values and "is_available" not in values:
            values["is_available"] = values["stock"] > 0

        old_image_url = None
        if image is not None and image.data:
            with self.tracer.start_as_current_span("storage.upload_image"):
                values["image_url"] = await self.storage.upload(image.data, image.filename, image.content_type)
            old_image_url = product.image_url

        with self.tracer.start_as_current_span("db.query.update_product") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product.id)

            for key, value in values.items():
                setattr(product, key, value)
            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to update product", extra={"product_id": product.id, "error": str(e)})
                if "image_url" in values:
                    await self.storage.delete_quietly(values["image_url"])
                raise DatabaseError("Could not update the product")
            db.refresh(product)

        if old_image_url:
            await self.storage.delete_quietly(old_image_url)

        logger.info("Product updated", extra={
            "product_id": product.id,
            "fields": sorted(values)
        })
        return product

    async def delete(self, db: Session, product_id: str, caller_id: str) -> Product:
        """Delete a product owned by the caller, then its image."""
        product = self._get_owned(db, product_id, caller_id)
        deleted = Product(**{column.name: getattr(product, column.name) for column in Product.__table__.columns})

        if product.image_url:
            await self.storage.delete_quietly(product.image_url)

        with self.tracer.start_as_current_span("db.query.delete_product") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product.id)

            try:
                db.delete(product)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to delete product", extra={"product_id": product.id, "error": str(e)})
                raise DatabaseError("Could not delete the product")

        products_deleted_counter.add(1, {"category": deleted.category})
        logger.info("Product deleted", extra={"product_id": deleted.id, "owner_id": caller_id})
        return deleted
