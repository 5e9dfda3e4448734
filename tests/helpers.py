from bson import ObjectId


def headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def inventory_qty(db, product_id: str) -> int:
    return db["inventory"].find_one({"product_id": product_id})["quantity"]


def product_stock(db, product_id: str) -> int:
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]
