from dataclasses import dataclass
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, contains_eager
from typing import List, Optional
from storefront.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.domain.models import CartItem, Product

@dataclass(frozen=True)
class CartMutation:
    """Identity of the line a cart operation touched."""
    product_id: int
    quantity: Optional[int]
    removed: bool = False

class CartStore:
    """Per-user cart lines. Runs inside the caller's transaction and never commits."""

    def __init__(self, db: Session):
        self.db = db

    def get_lines(self, user_id: int) -> List[CartItem]:
        return list(
            self.db.execute(
                select(CartItem)
                .join(CartItem.product)
                .options(contains_eager(CartItem.product))
                .where(CartItem.user_id == user_id)
                .order_by(Product.name)
            ).scalars()
        )

    def add_or_increment(self, user_id: int, product_id: int, quantity: int) -> CartMutation:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive.", product_id=product_id, quantity=quantity)
        product = self._product(product_id)
        if product.stock_quantity == 0:
            raise InsufficientStockError(product.id, product.name, quantity, 0)

        line = self._line(user_id, product_id)
        existing = line.quantity if line else 0
        total = existing + quantity
        if total > product.stock_quantity:
            raise InsufficientStockError(product.id, product.name, total, product.stock_quantity)

        if line is None:
            line = CartItem(user_id=user_id, product_id=product_id, quantity=total)
            self.db.add(line)
        else:
            line.quantity = total
        self.db.flush()
        return CartMutation(product_id=product_id, quantity=total)

    def set_quantity(self, user_id: int, product_id: int, quantity: int) -> CartMutation:
        product = self._product(product_id)
        if quantity <= 0:
            # Zero or less means "take it out of the cart"
            self._delete(user_id, product_id)
            return CartMutation(product_id=product_id, quantity=None, removed=True)
        if quantity > product.stock_quantity:
            raise InsufficientStockError(product.id, product.name, quantity, product.stock_quantity)

        line = self._line(user_id, product_id)
        if line is None:
            raise NotFoundError(
                "Cart item not found for this user and product.",
                product_id=product_id,
            )
        line.quantity = quantity
        self.db.flush()
        return CartMutation(product_id=product_id, quantity=quantity)

    def remove(self, user_id: int, product_id: int) -> CartMutation:
        if self._delete(user_id, product_id) == 0:
            raise NotFoundError(
                "Cart item not found for this user and product.",
                product_id=product_id,
            )
        return CartMutation(product_id=product_id, quantity=None, removed=True)

    def clear(self, user_id: int) -> int:
        result = self.db.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount

    def _product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise NotFoundError("Product not found.", product_id=product_id)
        return product

    def _line(self, user_id: int, product_id: int) -> Optional[CartItem]:
        return self.db.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        ).scalar_one_or_none()

    def _delete(self, user_id: int, product_id: int) -> int:
        result = self.db.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id, CartItem.product_id == product_id)
            .execution_options(synchronize_session="evaluate")
        )
        return result.rowcount
