"""
Identity collaborator: users, principals and the role checks used by the API.

Authentication mechanics are out of scope; a request names its user with the
X-User-Id header and the user record supplies the role.
"""

from typing import List, Optional

import structlog
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import NEWEST_FIRST, create_document, get_document, get_documents
from errors import AuthenticationError, ConflictError, NotFoundError
from schemas import Order, OrderStatus, Role, User, UserCreate

logger = structlog.get_logger(__name__)


class Principal(BaseModel):
    id: str
    name: str
    email: str
    role: Role


def _unknown_role(role) -> AssertionError:
    return AssertionError(f"Unhandled role: {role!r}")


class IdentityProvider:
    collection = "user"

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: UserCreate) -> User:
        try:
            user_id = create_document(self.db, self.collection, user)
        except DuplicateKeyError as e:
            raise ConflictError(f"A user with email {user.email} already exists", field="email") from e
        logger.info("user_created", user_id=user_id, role=user.role.value)
        return self.get(user_id)

    def get(self, user_id: str) -> User:
        doc = get_document(self.db, self.collection, user_id)
        if not doc:
            raise NotFoundError(f"User {user_id} not found", field="customer_id")
        return User(**doc)

    def list(self, role: Optional[Role] = None, limit: Optional[int] = None) -> List[User]:
        query = {"role": role.value} if role else {}
        return [User(**d) for d in get_documents(self.db, self.collection, query, limit, sort=NEWEST_FIRST)]

    def authenticate(self, user_id: Optional[str]) -> Principal:
        if not user_id:
            raise AuthenticationError("Missing X-User-Id header")
        try:
            user = self.get(user_id)
        except NotFoundError as e:
            raise AuthenticationError(f"Unknown user {user_id}") from e
        return Principal(id=user.id, name=user.name, email=user.email, role=user.role)


# Authorization decisions. Each one names every role so adding a member to
# Role fails loudly here instead of falling through.

def can_purchase(principal: Principal) -> bool:
    if principal.role is Role.CUSTOMER:
        return True
    if principal.role is Role.VENDOR:
        return False
    if principal.role is Role.ADMIN:
        return False
    raise _unknown_role(principal.role)


def can_write_review(principal: Principal) -> bool:
    return can_purchase(principal)


def can_list_products(principal: Principal) -> bool:
    if principal.role is Role.CUSTOMER:
        return False
    if principal.role is Role.VENDOR:
        return True
    if principal.role is Role.ADMIN:
        return False
    raise _unknown_role(principal.role)


def can_approve_products(principal: Principal) -> bool:
    if principal.role is Role.CUSTOMER:
        return False
    if principal.role is Role.VENDOR:
        return False
    if principal.role is Role.ADMIN:
        return True
    raise _unknown_role(principal.role)


def can_change_order_status(principal: Principal, order: Order, new_status: OrderStatus) -> bool:
    """Admins move any order, vendors move their own, customers may only cancel theirs."""
    if principal.role is Role.CUSTOMER:
        return order.customer_id == principal.id and new_status is OrderStatus.CANCELLED
    if principal.role is Role.VENDOR:
        return order.vendor_id == principal.id
    if principal.role is Role.ADMIN:
        return True
    raise _unknown_role(principal.role)
