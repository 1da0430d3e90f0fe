"""
Accounts service: users and vendors.

Authentication and credentials are handled upstream; this module only keeps
the account records the catalog, carts and orders point at.
"""
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from storefront.core.errors import ClientInputError, NotFoundError
from storefront.data.database import transaction
from storefront.data.models import USER_ROLES, VENDOR_STATUSES, User, Vendor
from storefront.query.builder import QueryBuilder
from storefront.query.types import EntityQueryConfig
from storefront.utils.logger import get_logger

logger = get_logger("services.accounts")

USER_QUERY = QueryBuilder(EntityQueryConfig(
    search_fields=("name", "email"),
    sortable_fields=("name", "created_at"),
    filterable_fields=("name", "created_at", "role", "status"),
    selectable_fields=("id", "name", "email", "role", "status", "created_at"),
    default_sort="-created_at",
))

VENDOR_QUERY = QueryBuilder(EntityQueryConfig(
    search_fields=("name",),
    sortable_fields=("name", "created_at"),
    filterable_fields=("name", "created_at", "status"),
    default_sort="-created_at",
))


def search_users(db: Session, params: Dict[str, Any], session_factory: Optional[sessionmaker] = None):
    return USER_QUERY.query(db, User, params, session_factory=session_factory).paginate().lean().execute()


def get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User '{user_id}' does not exist", details={"user_id": user_id})
    return user


def create_user(db: Session, name: str, email: str, role: str = "customer") -> User:
    if role not in USER_ROLES:
        raise ClientInputError(f"Unknown role '{role}'", details={"allowed": list(USER_ROLES)})
    user = User(name=name, email=email.strip().lower(), role=role)
    with transaction(db, "create_user"):
        db.add(user)
    db.refresh(user)
    logger.info("accounts: method=create_user user_id=%s role=%s", user.id, role)
    return user


def search_vendors(db: Session, params: Dict[str, Any], session_factory: Optional[sessionmaker] = None):
    return VENDOR_QUERY.query(db, Vendor, params, session_factory=session_factory).paginate().lean().execute()


def get_vendor(db: Session, vendor_id: str) -> Vendor:
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        raise NotFoundError(f"Vendor '{vendor_id}' does not exist", details={"vendor_id": vendor_id})
    return vendor


def create_vendor(db: Session, name: str, email: str, status: str = "pending") -> Vendor:
    if status not in VENDOR_STATUSES:
        raise ClientInputError(f"Unknown vendor status '{status}'", details={"allowed": list(VENDOR_STATUSES)})
    vendor = Vendor(name=name, email=email.strip().lower(), status=status)
    with transaction(db, "create_vendor"):
        db.add(vendor)
    db.refresh(vendor)
    logger.info("accounts: method=create_vendor vendor_id=%s status=%s", vendor.id, status)
    return vendor
