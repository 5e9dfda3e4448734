"""
Order lifecycle: checkout, cancellation, returns and role-gated status
transitions.

Status moves are driven by TRANSITIONS. A role may move an order only when
the current status is in its `sources` and the target is in its `targets`.
Cancellation releases the order's stock; moving to `returned` restocks it.
Each line carries a `reserved` flag so stock is released at most once for
each reservation, whatever path the status takes afterwards.
Status writes are compare-and-set on the status read, so a racing second
writer fails instead of repeating the inventory side effect.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional

from pymongo import ReturnDocument

from auth import Identity
from catalog import get_product
from database import create_document, find_by_id, get_documents, now_utc, oid
from errors import (AccessDenied, InsufficientInventory, InsufficientStock, NotFound,
                    ReturnNotRequested, ValidationError)
from inventory import InventoryLedger
from schemas import Order, OrderItem, OrderStatus, RoleName

logger = logging.getLogger(__name__)

ALL_STATUSES = frozenset(OrderStatus)


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[OrderStatus]
    targets: FrozenSet[OrderStatus]


TRANSITIONS: Dict[RoleName, Transition] = {
    RoleName.WAREHOUSE_MANAGER: Transition(
        sources=frozenset({OrderStatus.PENDING}),
        targets=frozenset({OrderStatus.PROCESSED, OrderStatus.CANCELLED}),
    ),
    RoleName.DELIVERY_AGENT: Transition(
        sources=frozenset({OrderStatus.PROCESSED, OrderStatus.SHIPPED}),
        targets=frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
    ),
    RoleName.ADMIN: Transition(sources=ALL_STATUSES, targets=ALL_STATUSES),
}

VISIBLE_STATUSES: Dict[RoleName, FrozenSet[OrderStatus]] = {
    RoleName.WAREHOUSE_MANAGER: frozenset({OrderStatus.PENDING, OrderStatus.PROCESSED}),
    RoleName.DELIVERY_AGENT: frozenset({OrderStatus.PROCESSED, OrderStatus.SHIPPED}),
}

CANCELLING_ROLES = frozenset({RoleName.USER, RoleName.WAREHOUSE_MANAGER, RoleName.ADMIN})


def is_transition_allowed(role: RoleName, source: OrderStatus, target: OrderStatus) -> bool:
    transition = TRANSITIONS.get(role)
    if transition is None:
        return False
    return OrderStatus(source) in transition.sources and OrderStatus(target) in transition.targets


def _parse_items(items: Any) -> List[Dict[str, Any]]:
    """Validate order lines, summing quantities of lines that name the same product."""
    if not isinstance(items, list) or not items:
        raise ValidationError("Invalid request: items must be a non-empty list")
    merged: Dict[str, int] = {}
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Invalid product data: each item must be an object")
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not product_id or isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Invalid product data: product ID and a positive quantity are required")
        merged[str(product_id)] = merged.get(str(product_id), 0) + quantity
    return [{"product_id": pid, "quantity": qty} for pid, qty in merged.items()]


class OrderService:
    def __init__(self, database, ledger: Optional[InventoryLedger] = None):
        self.db = database
        self.collection = database["order"]
        self.ledger = ledger or InventoryLedger(database)

    # ---------------------- Lookups ----------------------

    def _load(self, order_id: str) -> Dict[str, Any]:
        try:
            order = find_by_id(self.db, "order", order_id)
        except ValidationError:
            order = None
        if not order:
            raise NotFound("Order not found")
        return order

    def get_order(self, actor: Identity, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        if actor.role != RoleName.ADMIN and order["user_id"] != actor.user_id:
            raise AccessDenied("Access denied")
        return order

    def list_orders(self, actor: Identity) -> List[Dict[str, Any]]:
        if actor.role == RoleName.ADMIN:
            filt: Dict[str, Any] = {}
        elif actor.role == RoleName.USER:
            filt = {"user_id": actor.user_id}
        elif actor.role in VISIBLE_STATUSES:
            filt = {"status": {"$in": sorted(s.value for s in VISIBLE_STATUSES[actor.role])}}
        else:
            raise AccessDenied("Access denied")
        return get_documents(self.db, "order", filt)

    # ---------------------- Checkout ----------------------

    def create_order(self, actor: Identity, items: Any, total_amount: Any) -> Dict[str, Any]:
        """Validate stock for every line, persist a pending order, then reserve each line.

        A reservation failing after the order is stored leaves the order in
        place; the error is logged and propagated.
        """
        lines = _parse_items(items)
        if total_amount is None or isinstance(total_amount, bool) or not isinstance(total_amount, (int, float)) \
                or total_amount < 0:
            raise ValidationError("Invalid request: total_amount is required")

        order_items = []
        for line in lines:
            product = get_product(self.db, line["product_id"])
            name = product.get("name", line["product_id"])
            if product.get("stock", 0) < line["quantity"]:
                raise InsufficientStock(f"Insufficient stock for {name}")
            record = self.ledger.get_or_create(product)
            if record["quantity"] < line["quantity"]:
                raise InsufficientInventory(
                    f"Insufficient inventory for {name} "
                    f"(Inventory: {record['quantity']}, Requested: {line['quantity']})"
                )
            order_items.append(OrderItem(product_id=line["product_id"], quantity=line["quantity"],
                                         price=float(product.get("price", 0))))

        order = Order(user_id=actor.user_id, items=order_items, total_amount=total_amount)
        order_id = create_document(self.db, "order", order)
        logger.info("Order %s created by %s with %d line(s)", order_id, actor.user_id, len(order_items))

        for index, item in enumerate(order_items):
            try:
                self.ledger.reserve(item.product_id, item.quantity)
            except Exception:
                logger.error("Reservation for order %s failed on product %s; order left pending",
                             order_id, item.product_id)
                raise
            self.collection.update_one({"_id": oid(order_id)}, {"$set": {f"items.{index}.reserved": True}})
        return self._load(order_id)

    # ---------------------- Transitions ----------------------

    def _set_status(self, order: Dict[str, Any], target: OrderStatus) -> Dict[str, Any]:
        updated = self.collection.find_one_and_update(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": {"status": OrderStatus(target).value, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise AccessDenied("Order status changed concurrently")
        logger.info("Order %s moved %s -> %s", order["_id"], order["status"], updated["status"])
        return updated

    def _release_items(self, order: Dict[str, Any]) -> None:
        """Release every line whose stock is still held, clearing its flag first.

        Lines never reserved, or already released by an earlier cancel or
        return, are skipped, so stock comes back at most once per reservation.
        """
        for index, item in enumerate(order["items"]):
            flag = f"items.{index}.reserved"
            claimed = self.collection.find_one_and_update(
                {"_id": order["_id"], flag: {"$ne": False}},
                {"$set": {flag: False}},
            )
            if claimed is None:
                continue
            try:
                self.ledger.release(item["product_id"], item["quantity"])
            except Exception:
                self.collection.update_one({"_id": order["_id"]}, {"$set": {flag: True}})
                raise

    def cancel_order(self, actor: Identity, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        if actor.role not in CANCELLING_ROLES:
            raise AccessDenied("Access denied")
        if order["status"] != OrderStatus.PENDING.value:
            raise AccessDenied("Cannot cancel non-pending orders")
        if actor.role == RoleName.USER and order["user_id"] != actor.user_id:
            raise AccessDenied("Cannot cancel")
        updated = self._set_status(order, OrderStatus.CANCELLED)
        self._release_items(updated)
        return updated

    def request_return(self, actor: Identity, order_id: str) -> Dict[str, Any]:
        order = self._load(order_id)
        if actor.role != RoleName.USER or order["user_id"] != actor.user_id \
                or order["status"] != OrderStatus.DELIVERED.value:
            raise AccessDenied("Cannot request return")
        return self.collection.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"return_request": True, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )

    def update_status(self, actor: Identity, order_id: str, target: Any) -> Dict[str, Any]:
        try:
            target = OrderStatus(target)
        except ValueError:
            raise ValidationError(f"Unknown status: {target}")
        order = self._load(order_id)
        if not is_transition_allowed(actor.role, order["status"], target):
            raise AccessDenied("Access denied or invalid status transition")
        if target.value == order["status"]:
            raise ValidationError(f"Order is already {target.value}")
        if target == OrderStatus.RETURNED and not order.get("return_request"):
            raise ReturnNotRequested("Cannot return without request")
        updated = self._set_status(order, target)
        if target == OrderStatus.RETURNED:
            self._release_items(updated)
        return updated
