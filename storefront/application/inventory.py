from dataclasses import dataclass
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from typing import Dict, Iterable, List, Optional
from shared.core import get_logger
from storefront.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.domain.models import InventoryTransaction, Product, TransactionType

logger = get_logger(__name__)

@dataclass(frozen=True)
class StockChange:
    product_id: int
    previous_quantity: int
    new_quantity: int
    transaction_id: int

class InventoryLedger:
    """Sole writer of ``Product.stock_quantity``.

    Every change is paired with an append-only ``InventoryTransaction`` row
    written in the caller's transaction. The ledger never commits; products
    it touched are collected in ``changed_products`` so the caller can
    announce them once the surrounding transaction has committed.
    """

    def __init__(self, db: Session):
        self.db = db
        self._changed: Dict[int, Product] = {}

    @property
    def changed_products(self) -> List[Product]:
        return list(self._changed.values())

    def get_product(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id, populate_existing=True)
        if product is None:
            raise NotFoundError(f"Product with ID {product_id} not found.", product_id=product_id)
        return product

    def get_stock(self, product_id: int) -> int:
        return self.get_product(product_id).stock_quantity

    def lock_products(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        """Load and row-lock products in one statement.

        Locks are taken in ascending id order so concurrent orders touching
        overlapping products cannot deadlock. Missing ids are simply absent
        from the result.
        """
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        rows = self.db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .order_by(Product.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {product.id: product for product in rows}

    def reserve_and_decrement(
        self,
        product_id: int,
        quantity: int,
        reason: str,
        actor: Optional[int],
    ) -> StockChange:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive.", product_id=product_id, quantity=quantity)
        product = self.get_product(product_id)
        previous = product.stock_quantity

        # Compare-and-swap: the row only changes if enough stock is still there
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.refresh(product)
            raise InsufficientStockError(product.id, product.name, quantity, product.stock_quantity)

        self.db.refresh(product)
        entry = self._append(product, TransactionType.SALE, previous, product.stock_quantity, reason, actor)
        logger.info(
            "Stock reserved",
            extra={'extra_fields': {
                'product_id': product.id,
                'quantity': quantity,
                'previous_quantity': previous,
                'new_quantity': product.stock_quantity,
            }}
        )
        return StockChange(product.id, previous, product.stock_quantity, entry.id)

    def adjust_stock(
        self,
        product_id: int,
        new_quantity: int,
        reason: Optional[str],
        actor: Optional[int],
    ) -> StockChange:
        if new_quantity < 0:
            raise ValidationError("Stock quantity cannot be negative.", product_id=product_id, quantity=new_quantity)
        locked = self.lock_products([product_id])
        product = locked.get(product_id)
        if product is None:
            raise NotFoundError(f"Product with ID {product_id} not found.", product_id=product_id)
        previous = product.stock_quantity
        delta = new_quantity - previous
        kind = TransactionType.RESTOCK if delta > 0 else TransactionType.ADJUSTMENT

        self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=new_quantity)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(product)
        entry = self._append(product, kind, previous, new_quantity, reason or "Admin adjustment", actor)
        logger.info(
            "Stock adjusted",
            extra={'extra_fields': {
                'product_id': product.id,
                'type': kind.value,
                'previous_quantity': previous,
                'new_quantity': new_quantity,
            }}
        )
        return StockChange(product.id, previous, new_quantity, entry.id)

    def low_stock(self) -> List[Product]:
        return list(
            self.db.execute(
                select(Product)
                .where(Product.stock_quantity <= Product.min_stock)
                .order_by(Product.stock_quantity, Product.name)
            ).scalars()
        )

    def history(self, product_id: int) -> List[InventoryTransaction]:
        return list(
            self.db.execute(
                select(InventoryTransaction)
                .where(InventoryTransaction.product_id == product_id)
                .order_by(InventoryTransaction.id)
            ).scalars()
        )

    def _append(
        self,
        product: Product,
        kind: TransactionType,
        previous: int,
        new: int,
        reason: Optional[str],
        actor: Optional[int],
    ) -> InventoryTransaction:
        entry = InventoryTransaction(
            product_id=product.id,
            type=kind.value,
            quantity=new - previous,
            previous_quantity=previous,
            new_quantity=new,
            reason=reason,
            created_by=actor,
        )
        self.db.add(entry)
        self.db.flush()
        self._changed[product.id] = product
        return entry
