"""
Database Schemas for the Shop Backend

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Inventory -> "inventory").
References to other documents are stored as ObjectId strings.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, EmailStr


class RoleName(str, Enum):
    ADMIN = "admin"
    WAREHOUSE_MANAGER = "warehouse_manager"
    DELIVERY_AGENT = "delivery_agent"
    USER = "user"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class Role(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: RoleName


class User(BaseModel):
    username: str
    email: EmailStr
    password_hash: str
    role_id: str = Field(..., description="Mongo ObjectId of the user's role as string")


class Category(BaseModel):
    name: str
    description: Optional[str] = None


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0, description="Mirrors the inventory record's quantity")
    category_id: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list, description="Image URLs")


class Inventory(BaseModel):
    product_id: str = Field(..., description="One inventory record per product")
    quantity: int = 0
    last_updated: Optional[datetime] = None


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price when the order was placed")
    reserved: bool = Field(False, description="Stock for this line is currently held by the order")


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    return_request: bool = False
