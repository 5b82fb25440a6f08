"""
Checkout: turn a cart that may span several vendors into one order per vendor.

Orders for different vendors are separate records with no transaction
across them. Each vendor group is written with an idempotency key built from
the cart session and the vendor, so retrying a checkout that failed half way
picks up the orders already written and only creates the missing ones. The
cart is emptied only once every group has an order; until then the cart
refuses changes to the lines of vendors that already have one.
"""

from typing import Dict, List, Optional

import structlog

from cart import CartStore
from catalog import CatalogStore
from errors import AuthenticationError, AuthorizationError, CraftNestError, NotFoundError, ValidationError
from identity import Principal, can_purchase
from money import lines_total, to_float
from notifications import NotificationSink
from orders import OrderLedger, idempotency_key
from schemas import (
    Cart,
    CartLine,
    CheckoutResult,
    GroupStatus,
    Order,
    OrderLine,
    Role,
    Severity,
    VendorGroupOutcome,
)

logger = structlog.get_logger(__name__)


def group_by_vendor(lines: List[CartLine]) -> Dict[str, List[CartLine]]:
    """Partition cart lines by vendor, keeping the order vendors first appear in."""
    groups: Dict[str, List[CartLine]] = {}
    for line in lines:
        groups.setdefault(line.vendor_id, []).append(line)
    return groups


class CheckoutOrchestrator:
    def __init__(
        self,
        orders: OrderLedger,
        catalog: CatalogStore,
        carts: CartStore,
        notifications: NotificationSink,
    ):
        self.orders = orders
        self.catalog = catalog
        self.carts = carts
        self.notifications = notifications

    def place_order(
        self,
        cart: Cart,
        customer: Optional[Principal],
        shipping_address: str,
        payment_method,
    ) -> CheckoutResult:
        payment_method = getattr(payment_method, "value", payment_method)
        self._check_preconditions(cart, customer, shipping_address, payment_method)

        log = logger.bind(customer_id=customer.id, cart_session=cart.session_id)
        result = CheckoutResult()
        written = 0
        failed = False

        for vendor_id, lines in group_by_vendor(cart.items).items():
            total = to_float(lines_total(lines))
            outcome = VendorGroupOutcome(
                vendor_id=vendor_id,
                vendor_name=lines[0].vendor_name,
                total=total,
                status=GroupStatus.SKIPPED,
            )
            result.groups.append(outcome)
            if failed:
                continue

            order = Order(
                customer_id=customer.id,
                customer_name=customer.name,
                vendor_id=vendor_id,
                vendor_name=lines[0].vendor_name,
                products=[
                    OrderLine(product_id=line.product_id, name=line.name, price=line.price, quantity=line.quantity)
                    for line in lines
                ],
                total=total,
                shipping_address=shipping_address.strip(),
                payment_method=payment_method,
            )
            try:
                stored, created = self.orders.create_idempotent(order, idempotency_key(cart.session_id, vendor_id))
            except CraftNestError as e:
                failed = True
                outcome.status = GroupStatus.FAILED
                outcome.error_kind = e.kind
                outcome.error = e.message
                log.error("checkout_group_failed", vendor_id=vendor_id, error_kind=e.kind, error=e.message)
                continue

            outcome.status = GroupStatus.CREATED
            outcome.order_id = stored.id
            result.order_ids.append(stored.id)
            if created:
                written += 1
                self._notify(
                    "New Order",
                    f"You have received a new order (#{stored.id[-5:]}) from {customer.name}.",
                    Role.VENDOR,
                    vendor_id,
                )

        if not result.complete:
            log.warning(
                "checkout_partially_failed",
                created=[g.vendor_id for g in result.groups if g.status == GroupStatus.CREATED],
                failed=[g.vendor_id for g in result.groups if g.status == GroupStatus.FAILED],
                skipped=[g.vendor_id for g in result.groups if g.status == GroupStatus.SKIPPED],
            )
            return result

        if written:
            self._notify(
                "Order Placed",
                "Your order has been placed successfully and is being processed.",
                Role.CUSTOMER,
                customer.id,
            )
        self.carts.clear(cart.user_id, cart.session_id)
        log.info("checkout_completed", order_ids=result.order_ids, new_orders=written)
        return result

    def _check_preconditions(self, cart: Cart, customer: Optional[Principal], shipping_address, payment_method):
        if customer is None:
            raise AuthenticationError("Log in to check out")
        if not can_purchase(customer):
            raise AuthorizationError(f"A {customer.role.value} account cannot place orders")
        if cart.user_id != customer.id:
            raise AuthorizationError("This cart belongs to another user")
        if not cart.items:
            raise ValidationError("Cart is empty", field="cart")
        if not shipping_address or not shipping_address.strip():
            raise ValidationError("Shipping address is required", field="shipping_address")
        if not payment_method:
            raise ValidationError("Payment method is required", field="payment_method")

        # Re-read every product; the cart may be older than the catalog.
        # Groups already ordered under this session were checked when placed.
        placed = {
            vendor_id
            for vendor_id in group_by_vendor(cart.items)
            if self.orders.find_by_key(idempotency_key(cart.session_id, vendor_id)) is not None
        }
        wanted: Dict[str, int] = {}
        for line in cart.items:
            wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity
        for i, line in enumerate(cart.items):
            if line.vendor_id in placed:
                continue
            field = f"items[{i}]"
            try:
                product = self.catalog.get_by_id(line.product_id)
            except NotFoundError as e:
                raise ValidationError(f"{line.name} is no longer available", field=field) from e
            if not product.approved:
                raise ValidationError(f"{product.name} is not available for sale", field=field)
            if product.vendor_id != line.vendor_id:
                raise ValidationError(f"{product.name} changed seller, add it to the cart again", field=field)
            if wanted[line.product_id] > product.stock:
                raise ValidationError(
                    f"Only {product.stock} of {product.name} left in stock",
                    field=field,
                    details={"product_id": product.id, "stock": product.stock, "requested": wanted[line.product_id]},
                )

    def _notify(self, title: str, message: str, role: Role, user_id: str) -> None:
        try:
            self.notifications.notify(title, message, role, user_id, severity=Severity.SUCCESS)
        except CraftNestError as e:
            # orders stay committed when an alert cannot be stored
            logger.warning("notification_failed", title=title, target_user_id=user_id, error=e.message)
