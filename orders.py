"""
Order ledger: storage of single-vendor orders and the status state machine.

    pending    -> processing | cancelled
    processing -> shipped    | cancelled
    shipped    -> delivered
    delivered, cancelled: final

Status changes are conditional writes filtered on the status that was read,
so two requests racing on the same order can never both apply.
"""

import uuid
from decimal import Decimal
from typing import Callable, FrozenSet, List, Optional, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import CatalogStore
from database import NEWEST_FIRST, create_document, get_document, get_documents, serialize, storage_errors, utcnow
from errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from money import lines_total, to_decimal
from schemas import Order, OrderStatus

logger = structlog.get_logger(__name__)

VALID_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Ids of orders written with an idempotency key are derived from the key
ORDER_ID_NAMESPACE = uuid.UUID("3d6f8a52-94c1-4e0b-b7a2-5c1e9d04f6a3")

STATUS_WRITE_ATTEMPTS = 2


def allowed_transitions(status: OrderStatus) -> FrozenSet[OrderStatus]:
    return VALID_TRANSITIONS[OrderStatus(status)]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in allowed_transitions(current)


def is_terminal(status: OrderStatus) -> bool:
    return not allowed_transitions(status)


def idempotency_key(session_id: str, vendor_id: str) -> str:
    """Key of the order a cart session places with one vendor."""
    return f"{session_id}:{vendor_id}"


def order_id_for(idempotency_key: str) -> str:
    return str(uuid.uuid5(ORDER_ID_NAMESPACE, idempotency_key))


def _line_items(order: Order) -> List[Tuple[str, Decimal, int]]:
    return [(line.product_id, to_decimal(line.price), line.quantity) for line in order.products]


class OrderLedger:
    collection = "order"

    def __init__(self, db: Database, catalog: CatalogStore, clock: Callable = utcnow):
        self.db = db
        self.catalog = catalog
        self.clock = clock

    # Creation

    def create(self, order: Order, idempotency_key: Optional[str] = None) -> Order:
        stored, _ = self.create_idempotent(order, idempotency_key)
        return stored

    def create_idempotent(self, order: Order, idempotency_key: Optional[str]) -> Tuple[Order, bool]:
        """Store a new pending order.

        Returns the stored order and whether it was written by this call. With
        an idempotency key, a repeated call returns the order the first call
        wrote instead of creating a second one.
        """
        self._validate(order)

        now = self.clock()
        record = order.model_copy(
            update={
                "id": None,
                "status": OrderStatus.PENDING,
                "idempotency_key": idempotency_key,
                "created_at": now,
                "updated_at": now,
            }
        )

        if idempotency_key is None:
            order_id = create_document(self.db, self.collection, record)
            self._log_created(order_id, record)
            return self.get(order_id), True

        order_id = order_id_for(idempotency_key)
        existing = self._find(order_id)
        if existing is not None:
            return self._replay(existing, record), False
        try:
            create_document(self.db, self.collection, record, doc_id=order_id)
        except DuplicateKeyError:
            # Lost the insert race to a concurrent call with the same key
            return self._replay(self.get(order_id), record), False
        self._log_created(order_id, record)
        return self.get(order_id), True

    def _validate(self, order: Order) -> None:
        expected = lines_total(order.products)
        if to_decimal(order.total) != expected:
            raise ValidationError(
                f"Order total {to_decimal(order.total)} does not match its line items ({expected})",
                field="total",
                details={"total": str(to_decimal(order.total)), "expected": str(expected)},
            )
        for i, line in enumerate(order.products):
            try:
                product = self.catalog.get_by_id(line.product_id)
            except NotFoundError as e:
                raise ValidationError(
                    f"Product {line.product_id} does not exist", field=f"products[{i}].product_id"
                ) from e
            if product.vendor_id != order.vendor_id:
                raise ValidationError(
                    f"Product {line.product_id} is sold by {product.vendor_id}, not {order.vendor_id}",
                    field=f"products[{i}].product_id",
                )

    def _replay(self, existing: Order, record: Order) -> Order:
        same = (
            existing.customer_id == record.customer_id
            and existing.vendor_id == record.vendor_id
            and to_decimal(existing.total) == to_decimal(record.total)
            and _line_items(existing) == _line_items(record)
        )
        if not same:
            raise ConflictError(
                f"Idempotency key {record.idempotency_key} was already used for a different order",
                field="idempotency_key",
            )
        logger.info("order_create_replayed", order_id=existing.id, idempotency_key=record.idempotency_key)
        return existing

    def _log_created(self, order_id: str, record: Order) -> None:
        logger.info(
            "order_created",
            order_id=order_id,
            customer_id=record.customer_id,
            vendor_id=record.vendor_id,
            total=record.total,
            lines=len(record.products),
        )

    # Queries

    def _find(self, order_id: str) -> Optional[Order]:
        doc = get_document(self.db, self.collection, order_id)
        return Order(**doc) if doc else None

    def find_by_key(self, idempotency_key: str) -> Optional[Order]:
        return self._find(order_id_for(idempotency_key))

    def get(self, order_id: str) -> Order:
        order = self._find(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", field="order_id")
        return order

    def get_by_customer(self, customer_id: str) -> List[Order]:
        return self._query({"customer_id": customer_id})

    def get_by_vendor(self, vendor_id: str) -> List[Order]:
        return self._query({"vendor_id": vendor_id})

    def get_all(self) -> List[Order]:
        return self._query({})

    def _query(self, query) -> List[Order]:
        return [Order(**d) for d in get_documents(self.db, self.collection, query, sort=NEWEST_FIRST)]

    # Status

    def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_status: Optional[OrderStatus] = None,
    ) -> Order:
        """Move an order along the state machine.

        `expected_status` is the status the caller saw. If the order already
        sits in `new_status` the call is treated as a retry and returns the
        order unchanged; any other mismatch is a ConflictError.
        """
        new_status = OrderStatus(new_status)
        for attempt in range(1, STATUS_WRITE_ATTEMPTS + 1):
            order = self.get(order_id)
            current = order.status

            if expected_status is not None and current != expected_status:
                if current == new_status:
                    logger.info("order_status_already_applied", order_id=order_id, status=current.value)
                    return order
                raise ConflictError(
                    f"Order {order_id} is '{current.value}', expected '{OrderStatus(expected_status).value}'",
                    field="status",
                    details={"current": current.value},
                )

            if not can_transition(current, new_status):
                raise InvalidTransitionError(
                    current.value, new_status.value, [s.value for s in allowed_transitions(current)]
                )

            with storage_errors("order status update"):
                doc = self.db[self.collection].find_one_and_update(
                    {"_id": order_id, "status": current.value},
                    {"$set": {"status": new_status.value, "updated_at": self.clock()}},
                    return_document=ReturnDocument.AFTER,
                )
            if doc is not None:
                logger.info(
                    "order_status_changed",
                    order_id=order_id,
                    from_status=current.value,
                    to_status=new_status.value,
                )
                return Order(**serialize(doc))

            logger.warning("order_status_race_lost", order_id=order_id, attempt=attempt)

        raise ConflictError(f"Order {order_id} kept changing while updating its status", field="status")
