"""
Category and product data access.

Stock changes that must stay in step with inventory go through the
inventory ledger; `adjust_stock` and `set_stock` are the product half of
those writes and are not meant to be called on their own.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import (create_document, delete_by_id, find_by_id, get_documents,
                      now_utc, oid, update_by_id)
from errors import NotFound, ProductNotFound, ValidationError
from schemas import Category, Product

logger = logging.getLogger(__name__)


# ---------------------- Products ----------------------

def get_product(database, product_id: str) -> Dict[str, Any]:
    try:
        product = find_by_id(database, "product", product_id)
    except ValidationError:
        product = None
    if not product:
        raise ProductNotFound(f"Product not found: {product_id}")
    return product


def adjust_stock(database, product_id: str, delta: int) -> Optional[Dict[str, Any]]:
    """Atomically add `delta` to product.stock.

    Decrements only apply while enough stock remains. Returns the updated
    product, or None when the product is missing or the guard rejected it.
    """
    filt: Dict[str, Any] = {"_id": oid(product_id)}
    if delta < 0:
        filt["stock"] = {"$gte": -delta}
    return database["product"].find_one_and_update(
        filt,
        {"$inc": {"stock": delta}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )


def set_stock(database, product_id: str, quantity: int) -> Optional[Dict[str, Any]]:
    return update_by_id(database, "product", product_id, {"$set": {"stock": quantity}})


def list_products(database, category_id: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if category_id:
        filt["category_id"] = category_id
    return get_documents(database, "product", filt)


def create_product(database, ledger, body: Product) -> Dict[str, Any]:
    if body.category_id:
        get_category(database, body.category_id)
    product_id = create_document(database, "product", body)
    ledger.set_quantity(product_id, body.stock)
    logger.info("Created product %s with stock %s", product_id, body.stock)
    return get_product(database, product_id)


def update_product(database, ledger, product_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    get_product(database, product_id)
    fields = dict(fields)
    stock = fields.pop("stock", None)
    if fields.get("category_id"):
        get_category(database, fields["category_id"])
    if fields:
        update_by_id(database, "product", product_id, {"$set": fields})
    if stock is not None:
        ledger.set_quantity(product_id, stock)
    return get_product(database, product_id)


def delete_product(database, product_id: str) -> None:
    try:
        product = delete_by_id(database, "product", product_id)
    except ValidationError:
        product = None
    if not product:
        raise ProductNotFound(f"Product not found: {product_id}")
    database["inventory"].delete_one({"product_id": str(product["_id"])})
    logger.info("Deleted product %s and its inventory record", product_id)


# ---------------------- Categories ----------------------

def get_category(database, category_id: str) -> Dict[str, Any]:
    try:
        category = find_by_id(database, "category", category_id)
    except ValidationError:
        category = None
    if not category:
        raise NotFound("Category not found")
    return category


def list_categories(database) -> List[Dict[str, Any]]:
    return get_documents(database, "category")


def create_category(database, body: Category) -> Dict[str, Any]:
    category_id = create_document(database, "category", body)
    return get_category(database, category_id)


def update_category(database, category_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    get_category(database, category_id)
    return update_by_id(database, "category", category_id, {"$set": dict(fields)})


def delete_category(database, category_id: str) -> None:
    try:
        category = delete_by_id(database, "category", category_id)
    except ValidationError:
        category = None
    if not category:
        raise NotFound("Category not found")
