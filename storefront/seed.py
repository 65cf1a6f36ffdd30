"""Seed an empty database with the demo users and catalogue.

Run with ``python -m storefront.seed`` after migrations. Existing rows are
left alone, so the script can be re-run safely.
"""

from decimal import Decimal
from sqlalchemy import select
from sqlalchemy.orm import Session
from shared.core import get_logger, setup_logging
from storefront.auth import create_access_token
from storefront.core_settings import get_settings
from storefront.domain.models import Product, User, UserRole
from storefront.infrastructure.db import SessionLocal, init_models, run_in_transaction

logger = get_logger(__name__)

USERS = [
    ("Admin User", "admin@supply-chain.com", UserRole.ADMIN),
    ("John Doe", "user@supply-chain.com", UserRole.USER),
]

# name, description, price, stock, category, sku, min_stock, location
PRODUCTS = [
    ("Quantum Laptop", "High-performance laptop for professionals", "1299.99", 50, "Electronics", "ELEC-LP-01", 10, "Warehouse A"),
    ("Ergo-Comfort Mouse", "Ergonomic wireless mouse with 2-year battery life", "49.99", 250, "Electronics", "ELEC-MS-01", 50, "Warehouse A"),
    ("Aeron Office Chair", "Top-tier ergonomic office chair for maximum comfort", "999.99", 25, "Furniture", "FURN-CH-01", 5, "Warehouse B"),
    ("Galaxy Smartphone S-25", "Latest model smartphone with AI features", "899.99", 150, "Electronics", "ELEC-PH-01", 25, "Warehouse A"),
    ("Architect Desk Lamp", "Adjustable LED desk lamp with wireless charging", "79.99", 100, "Furniture", "FURN-LP-01", 20, "Warehouse B"),
    ("SonicFlow Headphones", "Active noise-cancelling wireless headphones", "249.99", 80, "Electronics", "ELEC-HP-01", 15, "Warehouse A"),
    ("Lift-Up Standing Desk", "Motorized adjustable height standing desk", "499.99", 30, "Furniture", "FURN-DK-01", 5, "Warehouse B"),
    ("Pixel Tablet Pro", "11-inch tablet with high-resolution \"paper\" display", "599.99", 60, "Electronics", "ELEC-TB-01", 10, "Warehouse A"),
    ("4K Ultra-HD Monitor", "27-inch 4K monitor for crisp visuals", "349.99", 45, "Electronics", "ELEC-MN-01", 10, "Warehouse C"),
    ("Clicky Mechanical Keyboard", "RGB mechanical keyboard for gaming and typing", "119.99", 75, "Electronics", "ELEC-KB-01", 15, "Warehouse A"),
    ("Pro-Grip Yoga Mat", "Extra-thick non-slip yoga mat", "39.99", 200, "Sports & Fitness", "SPRT-YM-01", 30, "Warehouse C"),
    ("Smart Air Fryer", "5.8-quart air fryer with app control", "129.99", 90, "Home Goods", "HOME-AF-01", 20, "Warehouse B"),
    ("Espresso Master Coffee Machine", "Automatic espresso and coffee maker", "699.99", 40, "Home Goods", "HOME-CM-01", 8, "Warehouse B"),
    ("The Silent Orbit (Hardcover)", "Bestselling science fiction novel by Jane Vere", "27.99", 300, "Books", "BOOK-SF-01", 25, "Warehouse D"),
    ("Adjustable Dumbbell Set", "Space-saving adjustable dumbbells (5-50 lbs)", "399.99", 50, "Sports & Fitness", "SPRT-DB-01", 10, "Warehouse C"),
]

def seed(db: Session) -> dict:
    """Insert missing users and products; returns how many of each were added."""
    known_emails = set(db.execute(select(User.email)).scalars())
    known_skus = set(db.execute(select(Product.sku)).scalars())

    users = [
        User(name=name, email=email, role=role.value)
        for name, email, role in USERS
        if email not in known_emails
    ]
    products = [
        Product(
            name=name, description=description, price=Decimal(price), stock_quantity=stock,
            category=category, sku=sku, min_stock=min_stock, location=location,
        )
        for name, description, price, stock, category, sku, min_stock, location in PRODUCTS
        if sku not in known_skus
    ]
    db.add_all(users + products)
    db.flush()
    return {"users": len(users), "products": len(products)}

def main():
    settings = get_settings()
    setup_logging(service_name=f"{settings.SERVICE_NAME}-seed", level=settings.LOG_LEVEL)
    init_models()
    db = SessionLocal()
    try:
        added = run_in_transaction(db, seed)
        logger.info("Seed complete", extra={'extra_fields': added})
        for user in db.execute(select(User).order_by(User.id)).scalars():
            # Demo tokens for trying the API and socket by hand
            print(f"{user.email} ({user.role}): {create_access_token(user.id, user.role)}")
    finally:
        db.close()

if __name__ == "__main__":
    main()
