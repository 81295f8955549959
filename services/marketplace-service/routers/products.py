"""Products API router."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Path, Query, UploadFile
from sqlalchemy.orm import Session
from opentelemetry import trace

from database import get_db
from schemas import ProductCreatedResponse, ProductDeletedResponse, ProductListResponse, ProductResponse
from auth import get_current_user
from dependencies import get_product_catalog
from services.identity_provider import CallerIdentity
from services.product_catalog import ImageUpload, ProductCatalog, ProductFilters

router = APIRouter(prefix="/products", tags=["products"])


def product_form(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    condition: Optional[str] = Form(None),
    brand: Optional[str] = Form(None),
    side: Optional[str] = Form(None),
    part_number: Optional[str] = Form(None, alias="partNumber"),
    is_available: Optional[str] = Form(None, alias="isAvailable"),
    is_on_offer: Optional[str] = Form(None, alias="isOnOffer"),
    original_price: Optional[str] = Form(None, alias="originalPrice"),
    discount_percentage: Optional[str] = Form(None, alias="discountPercentage")
) -> Dict[str, Any]:
    """Multipart product fields, keyed by column name. Absent fields are left out."""
    fields = {
        "name": name,
        "description": description,
        "price": price,
        "stock": stock,
        "category": category,
        "condition": condition,
        "brand": brand,
        "side": side,
        "part_number": part_number,
        "is_available": is_available,
        "is_on_offer": is_on_offer,
        "original_price": original_price,
        "discount_percentage": discount_percentage,
    }
    return {key: value for key, value in fields.items() if value is not None}


async def read_image(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None:
        return None
    data = await image.read()
    if not data:
        return None
    return ImageUpload(data=data, filename=image.filename or "image", content_type=image.content_type)


@router.post("", response_model=ProductCreatedResponse, status_code=201)
async def create_product(
    fields: Dict[str, Any] = Depends(product_form),
    image: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Create a product listing with its image - requires authentication."""
    product = await catalog.create(db, caller.id, caller.email, fields, await read_image(image))

    span = trace.get_current_span()
    span.set_attribute("product.id", product.id)
    span.set_attribute("product.category", product.category)

    return {"message": "Product created", "product": ProductResponse.model_validate(product)}


@router.get("", response_model=ProductListResponse)
async def list_products(
    name: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    condition: Optional[str] = Query(None),
    brand: Optional[str] = Query(None),
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    min_price: Optional[str] = Query(None, alias="minPrice"),
    max_price: Optional[str] = Query(None, alias="maxPrice"),
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, description="priceAsc, priceDesc or recent"),
    db: Session = Depends(get_db),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """
    List products with filters, sorting and pagination.

    Category, condition and brand match exactly; "all" or "todas" disable
    the filter. Name matches case-insensitively on a substring.

    Examples:
    - GET /products?category=Motor&sort=priceAsc
    - GET /products?minPrice=10&maxPrice=50&page=2&limit=5
    """
    filters = ProductFilters(
        name=name,
        category=category,
        condition=condition,
        brand=brand,
        seller_id=seller_id,
        min_price=min_price,
        max_price=max_price
    )
    products, total, current_page, per_page = catalog.list(db, filters, page, limit, sort)

    span = trace.get_current_span()
    span.set_attribute("product.count", len(products))
    span.set_attribute("product.total", total)

    return {
        "products": [ProductResponse.model_validate(product) for product in products],
        "total_products": total,
        "current_page": current_page,
        "products_per_page": per_page
    }


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: str = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Get product details."""
    return ProductResponse.model_validate(catalog.get(db, product_id))


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: str = Path(..., description="Product ID"),
    fields: Dict[str, Any] = Depends(product_form),
    image: Optional[UploadFile] = File(None),
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Update a product - only its owner may do this."""
    product = await catalog.update(db, product_id, caller.id, fields, await read_image(image))
    return ProductResponse.model_validate(product)


@router.delete("/{product_id}", response_model=ProductDeletedResponse)
async def delete_product(
    product_id: str = Path(..., description="Product ID"),
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_current_user),
    catalog: ProductCatalog = Depends(get_product_catalog)
):
    """Delete a product and its image - only its owner may do this."""
    deleted = await catalog.delete(db, product_id, caller.id)
    return {"message": "Product deleted", "deleted_product": ProductResponse.model_validate(deleted)}
