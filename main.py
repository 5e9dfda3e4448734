import os
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Dict, Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import database
from auth import (Identity, current_identity, generate_token, hash_password, require_roles,
                  resolve_role, verify_password)
from catalog import (create_category, create_product, delete_category, delete_product, get_category,
                     get_product, list_categories, list_products, update_category, update_product)
from database import create_document, delete_by_id, find_by_id, get_db, serialize, update_by_id
from errors import AccessDenied, NotFound, ServerError, ShopError, Unauthorized, ValidationError
from inventory import InventoryLedger
from orders import OrderService
from schemas import Category, Product, RoleName, User
from seed import seed_all

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if database.db is not None:
        seed_all(database.db)
    else:
        logger.warning("DATABASE_URL not set, skipping seeding")
    yield


app = FastAPI(title="Shop API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api")

STAFF = (RoleName.ADMIN, RoleName.WAREHOUSE_MANAGER)

# ---------------------- Errors ----------------------

@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    logger.error("Storage error on %s %s", request.method, request.url.path, exc_info=exc)
    err = ServerError("Server error")
    return JSONResponse(status_code=err.status_code, content={"detail": err.message, "code": err.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(
        status_code=ValidationError.status_code,
        content={"detail": "Invalid request", "code": ValidationError.code, "errors": errors},
    )

# ---------------------- Utilities ----------------------

def get_ledger(db=Depends(get_db)) -> InventoryLedger:
    return InventoryLedger(db)


def get_order_service(db=Depends(get_db)) -> OrderService:
    return OrderService(db)


def out(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    doc = serialize(doc)
    if doc and isinstance(doc.get("product"), dict):
        doc["product"] = serialize(doc["product"])
    return doc


def user_out(db, user: Dict[str, Any]) -> Dict[str, Any]:
    doc = serialize(user)
    doc.pop("password_hash", None)
    role = resolve_role(db, doc.get("role_id"))
    doc["role"] = role.value if role else None
    return doc


def find_user(db, user_id: str) -> Dict[str, Any]:
    try:
        user = find_by_id(db, "user", user_id)
    except ValidationError:
        user = None
    if not user:
        raise NotFound("User not found")
    return user


def require_self_or_admin(identity: Identity, user_id: str) -> None:
    if identity.role != RoleName.ADMIN and identity.user_id != user_id:
        raise AccessDenied("Access denied")

# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginBody(BaseModel):
    username: str
    password: str


class UserUpdateBody(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class RoleBody(BaseModel):
    role: RoleName


class CategoryUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = None
    category_id: Optional[str] = None
    image_urls: Optional[List[str]] = None


class InventoryBody(BaseModel):
    product_id: str
    quantity: int


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderBody(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)


class StatusBody(BaseModel):
    status: str

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Shop API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = db.name
        try:
            response["collections"] = db.list_collection_names()
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response

# ---------------------- Auth ----------------------

@api.post("/auth/register", status_code=201)
def register(body: RegisterBody, db=Depends(get_db)):
    if db["user"].find_one({"$or": [{"username": body.username}, {"email": body.email}]}):
        raise ValidationError("User exists")
    role = db["role"].find_one({"name": RoleName.USER.value})
    if not role:
        raise ServerError("Roles not seeded")
    user = User(
        username=body.username,
        email=body.email,
        password_hash=hash_password(body.password),
        role_id=str(role["_id"]),
    )
    user_id = create_document(db, "user", user)
    return {"token": generate_token({"_id": user_id}, RoleName.USER), "role": RoleName.USER.value}


@api.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"username": body.username})
    if not user or not verify_password(body.password, user.get("password_hash")):
        raise Unauthorized("Invalid credentials")
    role = resolve_role(db, user.get("role_id"))
    if role is None:
        raise Unauthorized("Invalid credentials")
    return {"token": generate_token(user, role), "role": role.value}

# ---------------------- Users ----------------------

@api.get("/users")
def list_users(_: Identity = Depends(require_roles(RoleName.ADMIN)), db=Depends(get_db)):
    return [user_out(db, u) for u in db["user"].find({})]


@api.get("/users/username/{username}")
def get_user_by_username(username: str, _: Identity = Depends(current_identity), db=Depends(get_db)):
    user = db["user"].find_one({"username": username})
    if not user:
        raise NotFound("User not found")
    return user_out(db, user)


@api.get("/users/{user_id}")
def get_user(user_id: str, identity: Identity = Depends(current_identity), db=Depends(get_db)):
    require_self_or_admin(identity, user_id)
    return user_out(db, find_user(db, user_id))


@api.put("/users/{user_id}")
def update_user(user_id: str, body: UserUpdateBody, identity: Identity = Depends(current_identity),
                db=Depends(get_db)):
    require_self_or_admin(identity, user_id)
    user = find_user(db, user_id)
    fields: Dict[str, Any] = {}
    if body.email is not None and body.email != user["email"]:
        if db["user"].find_one({"email": body.email}):
            raise ValidationError("Email already registered")
        fields["email"] = body.email
    if body.password:
        fields["password_hash"] = hash_password(body.password)
    if fields:
        user = update_by_id(db, "user", user_id, {"$set": fields})
    return user_out(db, user)


@api.delete("/users/{user_id}")
def delete_user(user_id: str, _: Identity = Depends(require_roles(RoleName.ADMIN)), db=Depends(get_db)):
    find_user(db, user_id)
    delete_by_id(db, "user", user_id)
    return {"msg": "User deleted"}


@api.put("/users/{user_id}/role")
def change_role(user_id: str, body: RoleBody, _: Identity = Depends(require_roles(RoleName.ADMIN)),
                db=Depends(get_db)):
    find_user(db, user_id)
    role = db["role"].find_one({"name": body.role.value})
    if not role:
        raise ValidationError("Invalid role")
    user = update_by_id(db, "user", user_id, {"$set": {"role_id": str(role["_id"])}})
    logger.info("User %s role changed to %s", user_id, body.role.value)
    return user_out(db, user)

# ---------------------- Categories ----------------------

@api.get("/categories")
def categories_index(db=Depends(get_db)):
    return [out(c) for c in list_categories(db)]


@api.get("/categories/{category_id}")
def categories_show(category_id: str, db=Depends(get_db)):
    return out(get_category(db, category_id))


@api.post("/categories", status_code=201)
def categories_create(body: Category, _: Identity = Depends(require_roles(*STAFF)), db=Depends(get_db)):
    return out(create_category(db, body))


@api.put("/categories/{category_id}")
def categories_update(category_id: str, body: CategoryUpdateBody, _: Identity = Depends(require_roles(*STAFF)),
                      db=Depends(get_db)):
    return out(update_category(db, category_id, body.model_dump(exclude_none=True)))


@api.delete("/categories/{category_id}")
def categories_delete(category_id: str, _: Identity = Depends(require_roles(*STAFF)), db=Depends(get_db)):
    delete_category(db, category_id)
    return {"msg": "Category deleted"}

# ---------------------- Products ----------------------

@api.get("/products")
def products_index(category_id: Optional[str] = None, db=Depends(get_db)):
    return [out(p) for p in list_products(db, category_id)]


@api.get("/products/{product_id}")
def products_show(product_id: str, db=Depends(get_db)):
    return out(get_product(db, product_id))


@api.post("/products", status_code=201)
def products_create(body: Product, _: Identity = Depends(require_roles(*STAFF)), db=Depends(get_db),
                    ledger: InventoryLedger = Depends(get_ledger)):
    return out(create_product(db, ledger, body))


@api.put("/products/{product_id}")
def products_update(product_id: str, body: ProductUpdateBody, _: Identity = Depends(require_roles(*STAFF)),
                    db=Depends(get_db), ledger: InventoryLedger = Depends(get_ledger)):
    return out(update_product(db, ledger, product_id, body.model_dump(exclude_none=True)))


@api.delete("/products/{product_id}")
def products_delete(product_id: str, _: Identity = Depends(require_roles(*STAFF)), db=Depends(get_db)):
    delete_product(db, product_id)
    return {"msg": "Product deleted"}

# ---------------------- Inventory ----------------------

@api.put("/inventory")
def inventory_update(body: InventoryBody, _: Identity = Depends(require_roles(*STAFF)),
                     ledger: InventoryLedger = Depends(get_ledger)):
    return out(ledger.set_quantity(body.product_id, body.quantity))


@api.get("/inventory")
def inventory_index(_: Identity = Depends(require_roles(*STAFF)), ledger: InventoryLedger = Depends(get_ledger)):
    return [out(r) for r in ledger.list_all()]


@api.get("/inventory/{product_id}")
def inventory_show(product_id: str, _: Identity = Depends(require_roles(*STAFF)),
                   ledger: InventoryLedger = Depends(get_ledger)):
    return out(ledger.for_product(product_id))

# ---------------------- Orders ----------------------

@api.post("/orders", status_code=201)
def orders_create(body: CreateOrderBody, identity: Identity = Depends(require_roles(RoleName.USER)),
                  service: OrderService = Depends(get_order_service)):
    items = [line.model_dump() for line in body.items]
    return out(service.create_order(identity, items, body.total_amount))


@api.get("/orders")
def orders_index(identity: Identity = Depends(current_identity), service: OrderService = Depends(get_order_service)):
    return [out(o) for o in service.list_orders(identity)]


@api.get("/orders/{order_id}")
def orders_show(order_id: str, identity: Identity = Depends(current_identity),
                service: OrderService = Depends(get_order_service)):
    return out(service.get_order(identity, order_id))


@api.put("/orders/{order_id}/cancel")
def orders_cancel(order_id: str,
                  identity: Identity = Depends(require_roles(RoleName.USER, RoleName.WAREHOUSE_MANAGER, RoleName.ADMIN)),
                  service: OrderService = Depends(get_order_service)):
    return out(service.cancel_order(identity, order_id))


@api.put("/orders/{order_id}/return")
def orders_return(order_id: str,
                  identity: Identity = Depends(require_roles(RoleName.USER, RoleName.DELIVERY_AGENT)),
                  service: OrderService = Depends(get_order_service)):
    return out(service.request_return(identity, order_id))


@api.put("/orders/{order_id}/status")
def orders_status(order_id: str, body: StatusBody,
                  identity: Identity = Depends(require_roles(RoleName.ADMIN, RoleName.WAREHOUSE_MANAGER,
                                                             RoleName.DELIVERY_AGENT)),
                  service: OrderService = Depends(get_order_service)):
    return out(service.update_status(identity, order_id, body.status))


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
