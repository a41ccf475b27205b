import logging
import time
from decimal import Decimal

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)

SQLALCHEMY_DATABASE_URL = config.DATABASE_URL

ORDER_SEQUENCE = "orders"

SAMPLE_MENU = [
    {"name": "Classic Pancakes", "description": "Fluffy buttermilk pancakes with maple syrup and butter",
     "price": "8.99", "category": "breakfast", "preparation_time": 10, "is_vegetarian": True},
    {"name": "Avocado Toast", "description": "Smashed avocado on multigrain toast with cherry tomatoes",
     "price": "6.99", "category": "breakfast", "preparation_time": 5, "is_vegetarian": True, "is_vegan": True},
    {"name": "Grilled Chicken Sandwich", "description": "Grilled chicken breast with lettuce, tomato and mayo",
     "price": "12.99", "category": "lunch", "preparation_time": 15},
    {"name": "Caesar Salad", "description": "Romaine lettuce, parmesan, croutons and caesar dressing",
     "price": "10.99", "category": "lunch", "preparation_time": 8, "is_vegetarian": True},
    {"name": "Grilled Salmon", "description": "Atlantic salmon with seasonal vegetables and rice",
     "price": "18.99", "category": "dinner", "preparation_time": 20, "is_gluten_free": True},
    {"name": "French Fries", "description": "Crispy golden fries with a pinch of sea salt",
     "price": "3.50", "category": "snacks", "preparation_time": 7, "is_vegetarian": True, "is_vegan": True},
    {"name": "Fresh Orange Juice", "description": "Freshly squeezed orange juice, no added sugar",
     "price": "3.99", "category": "beverages", "preparation_time": 3, "is_vegetarian": True, "is_vegan": True},
    {"name": "Chocolate Brownie", "description": "Warm chocolate brownie with a scoop of vanilla ice cream",
     "price": "5.49", "category": "desserts", "preparation_time": 5, "is_vegetarian": True},
]


def _engine_kwargs(url):
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True, "pool_recycle": 300}


def wait_for_db(max_retries=30, retry_interval=2):
    logger.info("Waiting for the database...")

    for attempt in range(max_retries):
        try:
            temp_engine = create_engine(SQLALCHEMY_DATABASE_URL, **_engine_kwargs(SQLALCHEMY_DATABASE_URL))
            with temp_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is available")
            temp_engine.dispose()
            return True
        except OperationalError as e:
            logger.warning("Attempt %s/%s: database not available yet: %s", attempt + 1, max_retries, e)
            if attempt < max_retries - 1:
                time.sleep(retry_interval)

    logger.error("Could not connect to the database after %s attempts", max_retries)
    return False


engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    echo=False,
    **_engine_kwargs(SQLALCHEMY_DATABASE_URL)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create tables and make sure the order number sequence row exists."""
    import models

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        counter = db.query(models.OrderCounter).filter(models.OrderCounter.name == ORDER_SEQUENCE).first()
        if not counter:
            # Continue numbering after any orders that predate the counter
            existing = db.query(models.Order).count()
            db.add(models.OrderCounter(name=ORDER_SEQUENCE, value=existing))
            db.commit()
            logger.info("Order sequence initialised at %s", existing)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_seed_data():
    from models import Category, MenuItem, Role, User
    import auth

    db = SessionLocal()
    try:
        admin = db.query(User).filter(User.role == Role.ADMIN.value).first()
        if not admin and config.SEED_ADMIN_PASSWORD:
            admin = User(
                email=config.SEED_ADMIN_EMAIL.lower(),
                password=auth.get_password_hash(config.SEED_ADMIN_PASSWORD),
                name="Admin User",
                role=Role.ADMIN.value,
            )
            db.add(admin)
            db.commit()
            db.refresh(admin)
            logger.info("Bootstrap administrator %s created", admin.email)

        if config.SEED_SAMPLE_MENU and db.query(MenuItem).count() == 0:
            for item in SAMPLE_MENU:
                data = dict(item)
                data["category"] = Category(data["category"]).value
                data["price"] = Decimal(data["price"])
                db.add(MenuItem(created_by_id=admin.id if admin else None, **data))
            db.commit()
            logger.info("Seeded %s sample menu items", len(SAMPLE_MENU))
    except Exception as e:
        logger.error("Error while seeding data: %s", e)
        db.rollback()
        raise
    finally:
        db.close()
