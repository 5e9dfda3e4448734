"""
Inventory ledger: per-product available quantity kept in step with
product.stock.

Every stock-affecting write touches two documents, the inventory record and
the product. Each write is a single atomic update, guarded so a decrement
never takes a counter below zero, and the pair runs under a per-product lock.
If the product write fails after the inventory write succeeded, the inventory
write is reverted before the error propagates. Between the two writes a
reader may briefly see the inventory already adjusted and the product not yet.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from catalog import adjust_stock, get_product, set_stock
from database import now_utc
from errors import InsufficientStock, InvalidQuantity, NotFound, ProductNotFound

logger = logging.getLogger(__name__)

_locks: Dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def product_lock(product_id: str) -> threading.Lock:
    """Process-wide lock serializing stock changes for one product."""
    with _locks_guard:
        lock = _locks.get(product_id)
        if lock is None:
            lock = _locks[product_id] = threading.Lock()
        return lock


def _check_quantity(qty: Any, allow_zero: bool = False) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise InvalidQuantity("Quantity must be an integer")
    if qty < 0 or (qty == 0 and not allow_zero):
        raise InvalidQuantity(f"Invalid quantity: {qty}")
    return qty


class InventoryLedger:
    def __init__(self, database):
        self.db = database
        self.collection = database["inventory"]

    def get(self, product_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"product_id": str(product_id)})

    def get_or_create(self, product: Dict[str, Any]) -> Dict[str, Any]:
        """Return the product's inventory record, creating it from product.stock if absent."""
        product_id = str(product["_id"])
        record = self.get(product_id)
        if record is not None:
            return record
        now = now_utc()
        record = self.collection.find_one_and_update(
            {"product_id": product_id},
            {"$setOnInsert": {
                "quantity": int(product.get("stock", 0)),
                "last_updated": now,
                "created_at": now,
            }},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Created inventory for product %s with quantity %s", product_id, record["quantity"])
        return record

    def _inc(self, product_id: str, delta: int, guarded: bool = True,
             upsert: bool = False) -> Optional[Dict[str, Any]]:
        filt: Dict[str, Any] = {"product_id": product_id}
        if delta < 0 and guarded:
            filt["quantity"] = {"$gte": -delta}
        return self.collection.find_one_and_update(
            filt,
            {"$inc": {"quantity": delta}, "$set": {"last_updated": now_utc()}},
            upsert=upsert,
            return_document=ReturnDocument.AFTER,
        )

    def _apply(self, product_id: str, delta: int) -> Optional[Dict[str, Any]]:
        """Move inventory and product.stock by `delta`; undo the inventory side if the product side fails."""
        record = self._inc(product_id, delta, upsert=delta > 0)
        if record is None:
            return None
        try:
            product = adjust_stock(self.db, product_id, delta)
        except PyMongoError:
            logger.exception("Stock update failed for product %s, reverting inventory by %+d", product_id, -delta)
            self._inc(product_id, -delta, guarded=False)
            raise
        if product is None:
            logger.warning("Product %s rejected stock change %+d, reverting inventory", product_id, delta)
            self._inc(product_id, -delta, guarded=False)
            return None
        return record

    def reserve(self, product_id: str, qty: int) -> Dict[str, Any]:
        """Take `qty` units out of inventory and product stock for an order."""
        qty = _check_quantity(qty)
        product_id = str(product_id)
        with product_lock(product_id):
            try:
                product = get_product(self.db, product_id)
            except ProductNotFound:
                raise InsufficientStock(f"Product not found: {product_id}")
            self.get_or_create(product)
            record = self._apply(product_id, -qty)
            if record is None:
                raise InsufficientStock(f"Insufficient stock for {product.get('name', product_id)}")
        logger.info("Reserved %s of product %s, %s left", qty, product_id, record["quantity"])
        return record

    def release(self, product_id: str, qty: int) -> Optional[Dict[str, Any]]:
        """Put `qty` units back. Products that no longer exist are skipped."""
        qty = _check_quantity(qty)
        product_id = str(product_id)
        with product_lock(product_id):
            try:
                get_product(self.db, product_id)
            except ProductNotFound:
                logger.warning("Skipping release of %s for deleted product %s", qty, product_id)
                return None
            record = self._apply(product_id, qty)
        if record is not None:
            logger.info("Released %s of product %s, now %s", qty, product_id, record["quantity"])
        return record

    def set_quantity(self, product_id: str, qty: int) -> Dict[str, Any]:
        """Set inventory and product stock to an absolute quantity."""
        qty = _check_quantity(qty, allow_zero=True)
        product_id = str(product_id)
        get_product(self.db, product_id)
        with product_lock(product_id):
            previous = self.get(product_id)
            record = self.collection.find_one_and_update(
                {"product_id": product_id},
                {"$set": {"quantity": qty, "last_updated": now_utc()},
                 "$setOnInsert": {"created_at": now_utc()}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
            try:
                set_stock(self.db, product_id, qty)
            except PyMongoError:
                logger.exception("Stock update failed for product %s, restoring inventory", product_id)
                if previous is None:
                    self.collection.delete_one({"product_id": product_id})
                else:
                    self.collection.update_one({"product_id": product_id},
                                               {"$set": {"quantity": previous["quantity"]}})
                raise
        logger.info("Set inventory of product %s to %s", product_id, qty)
        return record

    def list_all(self) -> List[Dict[str, Any]]:
        records = list(self.collection.find({}))
        for record in records:
            record["product"] = self._product_or_none(record["product_id"])
        return records

    def for_product(self, product_id: str) -> Dict[str, Any]:
        record = self.get(product_id)
        if not record:
            raise NotFound("Inventory not found")
        record["product"] = self._product_or_none(record["product_id"])
        return record

    def initialize_missing(self) -> int:
        """Create inventory records for every product that lacks one."""
        created = 0
        for product in self.db["product"].find({}):
            if self.get(str(product["_id"])) is None:
                self.get_or_create(product)
                created += 1
        return created

    def _product_or_none(self, product_id: str) -> Optional[Dict[str, Any]]:
        try:
            return get_product(self.db, product_id)
        except ProductNotFound:
            return None
