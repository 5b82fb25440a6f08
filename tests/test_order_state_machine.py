"""Order status state machine: permitted edges and rejected requests."""

import pytest

from errors import InvalidTransitionError
from orders import allowed_transitions, can_transition, is_terminal
from schemas import Order, OrderLine, OrderStatus

S = OrderStatus

VALID_EDGES = [
    (S.PENDING, S.PROCESSING),
    (S.PENDING, S.CANCELLED),
    (S.PROCESSING, S.SHIPPED),
    (S.PROCESSING, S.CANCELLED),
    (S.SHIPPED, S.DELIVERED),
]

INVALID_EDGES = [
    (a, b) for a in OrderStatus for b in OrderStatus if (a, b) not in VALID_EDGES
]


@pytest.mark.parametrize("current,target", VALID_EDGES)
def test_valid_edges(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize("current,target", INVALID_EDGES)
def test_everything_else_is_rejected(current, target):
    assert not can_transition(current, target)


def test_terminal_states():
    assert is_terminal(S.DELIVERED)
    assert is_terminal(S.CANCELLED)
    assert not is_terminal(S.SHIPPED)
    assert allowed_transitions(S.DELIVERED) == frozenset()


@pytest.fixture()
def pending_order(orders, customer, vendor, make_product):
    product = make_product(vendor, price=12.5)
    return orders.create(
        Order(
            customer_id=customer.id,
            customer_name=customer.name,
            vendor_id=vendor.id,
            vendor_name=vendor.name,
            products=[OrderLine(product_id=product.id, name=product.name, price=12.5, quantity=1)],
            total=12.5,
            shipping_address="1 Kiln Lane, Stoke, UK",
            payment_method="credit_card",
        )
    )


def test_pending_cannot_jump_to_shipped(orders, pending_order):
    with pytest.raises(InvalidTransitionError) as exc:
        orders.update_status(pending_order.id, S.SHIPPED)

    assert exc.value.current == "pending"
    assert exc.value.requested == "shipped"
    assert orders.get(pending_order.id).status == S.PENDING


def test_full_lifecycle_then_no_way_back(orders, pending_order):
    for status in (S.PROCESSING, S.SHIPPED, S.DELIVERED):
        assert orders.update_status(pending_order.id, status).status == status

    with pytest.raises(InvalidTransitionError):
        orders.update_status(pending_order.id, S.PROCESSING)
    assert orders.get(pending_order.id).status == S.DELIVERED


def test_cancelled_is_final(orders, pending_order):
    orders.update_status(pending_order.id, S.CANCELLED)

    for status in OrderStatus:
        with pytest.raises(InvalidTransitionError):
            orders.update_status(pending_order.id, status)
    assert orders.get(pending_order.id).status == S.CANCELLED


def test_shipped_cannot_be_cancelled(orders, pending_order):
    orders.update_status(pending_order.id, S.PROCESSING)
    orders.update_status(pending_order.id, S.SHIPPED)

    with pytest.raises(InvalidTransitionError) as exc:
        orders.update_status(pending_order.id, S.CANCELLED)
    assert exc.value.details["allowed"] == ["delivered"]
