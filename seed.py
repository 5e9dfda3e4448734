"""Startup seeding: roles, the default admin account, missing inventory records."""
import os
import logging

from auth import hash_password
from database import create_document, ensure_indexes
from inventory import InventoryLedger
from schemas import Role, RoleName, User

logger = logging.getLogger(__name__)

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")


def seed_roles(database) -> None:
    for name in RoleName:
        if database["role"].find_one({"name": name.value}) is None:
            create_document(database, "role", Role(name=name))
            logger.info("Role %s created", name.value)


def seed_admin(database) -> None:
    if database["user"].find_one({"username": ADMIN_USERNAME}) is not None:
        return
    admin_role = database["role"].find_one({"name": RoleName.ADMIN.value})
    user = User(
        username=ADMIN_USERNAME,
        email=ADMIN_EMAIL,
        password_hash=hash_password(ADMIN_PASSWORD),
        role_id=str(admin_role["_id"]),
    )
    create_document(database, "user", user)
    logger.info("Default admin created: username=%s", ADMIN_USERNAME)


def seed_all(database) -> None:
    ensure_indexes(database)
    seed_roles(database)
    seed_admin(database)
    created = InventoryLedger(database).initialize_missing()
    logger.info("Inventory initialization completed, %d record(s) created", created)
