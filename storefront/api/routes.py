from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from shared.core import get_logger
from storefront.api.deps import get_broadcaster, get_current_user
from storefront.application.cart import CartStore
from storefront.application.events import publish_cart_updated
from storefront.application.orders import OrderCoordinator, get_order_for
from storefront.application.schemas import (
    CartAddRequest, CartLineRead, CartMutationRead, CartUpdateRequest,
    OrderRead, PlaceOrderRequest, PlaceOrderResponse,
)
from storefront.domain.models import User
from storefront.infrastructure.db import get_db, run_in_transaction
from storefront.infrastructure.realtime import EventBroadcaster

orders_router = APIRouter(prefix="/orders", tags=["orders"])
cart_router = APIRouter(prefix="/cart", tags=["cart"])

logger = get_logger(__name__)

@orders_router.post("", response_model=PlaceOrderResponse, status_code=201)
def place_order(
    payload: PlaceOrderRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    return OrderCoordinator(db, broadcaster).place_order(user.id, payload).to_response()

@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return get_order_for(db, order_id, user)

@cart_router.get("", response_model=list[CartLineRead])
def get_cart(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return [
        CartLineRead(
            product_id=line.product_id,
            cart_item_id=line.id,
            quantity=line.quantity,
            name=line.product.name,
            description=line.product.description,
            price=line.product.price,
            stock_quantity=line.product.stock_quantity,
            category=line.product.category,
            sku=line.product.sku,
            location=line.product.location,
        )
        for line in CartStore(db).get_lines(user.id)
    ]

def _mutate_cart(db: Session, broadcaster: EventBroadcaster, user: User, change, message: str):
    mutation = run_in_transaction(db, lambda session: change(CartStore(session)))
    try:
        publish_cart_updated(broadcaster, user.id, message)
    except Exception:
        # The cart change is committed; a failed notification must not turn it into an error
        logger.error(f"Broadcast of cart change for user {user.id} failed", exc_info=True)
    return mutation

@cart_router.post("/items", response_model=CartMutationRead, status_code=201)
def add_to_cart(
    payload: CartAddRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    mutation = _mutate_cart(
        db, broadcaster, user,
        lambda cart: cart.add_or_increment(user.id, payload.product_id, payload.quantity),
        "Item added to cart.",
    )
    return CartMutationRead(product_id=mutation.product_id, quantity=mutation.quantity, removed=mutation.removed)

@cart_router.put("/items/{product_id}", response_model=CartMutationRead)
def update_cart_item(
    product_id: int,
    payload: CartUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    mutation = _mutate_cart(
        db, broadcaster, user,
        lambda cart: cart.set_quantity(user.id, product_id, payload.quantity),
        "Cart item removed." if payload.quantity == 0 else "Cart item quantity updated.",
    )
    return CartMutationRead(product_id=mutation.product_id, quantity=mutation.quantity, removed=mutation.removed)

@cart_router.delete("/items/{product_id}", response_model=CartMutationRead)
def remove_cart_item(
    product_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    mutation = _mutate_cart(
        db, broadcaster, user,
        lambda cart: cart.remove(user.id, product_id),
        "Cart item removed.",
    )
    return CartMutationRead(product_id=mutation.product_id, quantity=mutation.quantity, removed=mutation.removed)

@cart_router.delete("")
def clear_cart(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    removed = _mutate_cart(db, broadcaster, user, lambda cart: cart.clear(user.id), "Cart cleared.")
    return {"removed": removed}
