"""
Shopping cart sessions, one per user.

Lines keep the name, price and vendor of the product as they were when the
item was added; checkout charges those snapshot prices. Clearing a cart
starts a new session id.

Once a checkout has placed the order for one vendor, that vendor's lines
stay as they were ordered until the session ends, so a retried checkout
replays exactly what was placed.
"""

from typing import Callable, List

import structlog
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import CatalogStore
from database import create_document, new_id, serialize, storage_errors, to_document, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from orders import OrderLedger, idempotency_key, order_id_for
from schemas import Cart, CartLine, Product

logger = structlog.get_logger(__name__)


class CartStore:
    collection = "cart"

    def __init__(self, db: Database, catalog: CatalogStore, clock: Callable = utcnow):
        self.db = db
        self.catalog = catalog
        self.clock = clock

    def get(self, user_id: str) -> Cart:
        with storage_errors("cart read"):
            doc = self.db[self.collection].find_one({"user_id": user_id})
        if doc:
            return Cart(**serialize(doc))

        cart = Cart(user_id=user_id, session_id=new_id(), items=[], updated_at=self.clock())
        try:
            create_document(self.db, self.collection, cart)
        except DuplicateKeyError:
            # created by a concurrent request
            return self.get(user_id)
        logger.info("cart_session_started", user_id=user_id, session_id=cart.session_id)
        return cart

    def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> Cart:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")
        product = self._sellable(product_id)
        cart = self.get(user_id)
        self._check_open(cart, product.vendor_id, product.name)

        items = list(cart.items)
        for i, line in enumerate(items):
            if line.product_id == product_id:
                self._check_stock(product, line.quantity + quantity)
                items[i] = line.model_copy(update={"quantity": line.quantity + quantity})
                break
        else:
            self._check_stock(product, quantity)
            items.append(
                CartLine(
                    product_id=product.id,
                    name=product.name,
                    price=product.price,
                    vendor_id=product.vendor_id,
                    vendor_name=product.vendor_name,
                    quantity=quantity,
                )
            )
        return self._save(cart, items)

    def update_quantity(self, user_id: str, product_id: str, quantity: int) -> Cart:
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative", field="quantity")
        if quantity == 0:
            return self.remove_item(user_id, product_id)

        cart = self.get(user_id)
        items = list(cart.items)
        for i, line in enumerate(items):
            if line.product_id == product_id:
                self._check_open(cart, line.vendor_id, line.name)
                self._check_stock(self.catalog.get_by_id(product_id), quantity)
                items[i] = line.model_copy(update={"quantity": quantity})
                return self._save(cart, items)
        raise NotFoundError(f"Product {product_id} is not in the cart", field="product_id")

    def remove_item(self, user_id: str, product_id: str) -> Cart:
        cart = self.get(user_id)
        removed = [line for line in cart.items if line.product_id == product_id]
        if not removed:
            return cart
        self._check_open(cart, removed[0].vendor_id, removed[0].name)
        return self._save(cart, [line for line in cart.items if line.product_id != product_id])

    def clear(self, user_id: str, session_id: str = None) -> Cart:
        """Empty the cart and start a new session.

        With `session_id`, only that session is cleared; a cart that has
        already moved on is left alone.
        """
        query = {"user_id": user_id}
        if session_id:
            query["session_id"] = session_id
        with storage_errors("cart clear"):
            self.db[self.collection].update_one(
                query, {"$set": {"items": [], "session_id": new_id(), "updated_at": self.clock()}}
            )
        return self.get(user_id)

    def _sellable(self, product_id: str) -> Product:
        product = self.catalog.get_by_id(product_id)
        if not product.approved:
            raise ValidationError(f"{product.name} is not available for sale yet", field="product_id")
        return product

    def _check_open(self, cart: Cart, vendor_id: str, name: str) -> None:
        with storage_errors("order lookup"):
            placed = self.db[OrderLedger.collection].find_one(
                {"_id": order_id_for(idempotency_key(cart.session_id, vendor_id))}, {"_id": 1}
            )
        if placed is not None:
            raise ValidationError(
                f"{name} is in an order already placed from this cart, finish the checkout before changing it",
                field="product_id",
                details={"vendor_id": vendor_id, "order_id": placed["_id"]},
            )

    def _check_stock(self, product: Product, quantity: int) -> None:
        if quantity > product.stock:
            raise ValidationError(
                f"Only {product.stock} of {product.name} left in stock",
                field="quantity",
                details={"product_id": product.id, "stock": product.stock, "requested": quantity},
            )

    def _save(self, cart: Cart, items: List[CartLine]) -> Cart:
        with storage_errors("cart update"):
            res = self.db[self.collection].update_one(
                {"user_id": cart.user_id, "session_id": cart.session_id},
                {"$set": {"items": [to_document(line) for line in items], "updated_at": self.clock()}},
            )
        if res.matched_count == 0:
            raise ConflictError("The cart was checked out or cleared meanwhile", field="cart")
        return self.get(cart.user_id)
