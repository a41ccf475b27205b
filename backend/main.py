import asyncio
import json
import logging
import os
from datetime import datetime
from decimal import Decimal
from math import ceil
from typing import List, Optional

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, \
    WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import case, func, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import auth
import config
import errors
import lifecycle
import models
from auth import Capability
from database import SessionLocal, get_db, init_db, init_seed_data, wait_for_db
from models import Category, OrderStatus, OrderType, Role, utcnow
from notifications import STAFF_ROOM, hub, order_room
from redis_client import rate_limit, redis_client
from schemas import (
    CategorySummary,
    MenuItemCreate,
    MenuItemResponse,
    MenuItemUpdate,
    MenuListResponse,
    OrderCreate,
    OrderItemResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    Pagination,
    PasswordChange,
    PaymentRequest,
    ProfileUpdate,
    ReviewCreate,
    RoleUpdate,
    StatusUpdate,
    UserCreate,
    UserLogin,
    UserResponse,
)

config.setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Cafeteria Ordering API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(errors.CafeteriaError)
async def cafeteria_error_handler(request: Request, exc: errors.CafeteriaError):
    headers = None
    if isinstance(exc, errors.Unauthorized):
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, errors.RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Validation failed",
            "error": errors.ValidationFailed.kind,
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.on_event("startup")
def startup_event():
    if wait_for_db():
        try:
            init_db()
            init_seed_data()
            logger.info("Database initialised")
        except Exception:
            logger.exception("Error while initialising the database")
    else:
        logger.error("Database did not become available during startup")

    if redis_client.is_available():
        logger.info("Redis is available")
    else:
        logger.warning("Redis is not available, caching and rate limiting are disabled")


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise errors.Unauthorized("Not authenticated")
    return auth.authenticate_token(db, authorization[len("Bearer "):].strip())


def require(capability):
    def dependency(current_user: models.User = Depends(get_current_user)):
        return auth.authorize(current_user, capability)
    return dependency


require_staff = require(Capability.STAFF_OR_ADMIN)
require_admin = require(Capability.ADMIN_ONLY)


def paginate(query, page: int, limit: int):
    total = query.count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    pagination = Pagination(
        current_page=page,
        total_pages=ceil(total / limit) if total else 0,
        total_items=total,
        items_per_page=limit,
    )
    return rows, pagination


def get_user_or_404(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise errors.NotFound("User not found")
    return user


def get_menu_item_or_404(db: Session, item_id: int) -> models.MenuItem:
    menu_item = db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()
    if not menu_item:
        raise errors.NotFound("Menu item not found")
    return menu_item


def get_order_or_404(db: Session, order_id: int) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if not order:
        raise errors.NotFound("Order not found")
    return order


def check_order_access(current_user: models.User, order: models.Order):
    if not Role(current_user.role).is_staff:
        auth.authorize(current_user, Capability.OWNER_OR_ADMIN, owner_id=order.customer_id)


def get_order_response(order: models.Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        customer_name=order.customer.name if order.customer else "Unknown",
        items=[OrderItemResponse.model_validate(item) for item in order.items],
        total_amount=float(order.total_amount),
        status=order.status,
        order_type=order.order_type,
        delivery_address=order.delivery_address,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        estimated_delivery_time=order.estimated_delivery_time,
        actual_delivery_time=order.actual_delivery_time,
        special_instructions=order.special_instructions,
        staff_notes=order.staff_notes,
        assigned_to_id=order.assigned_to_id,
        assigned_to_name=order.assigned_to.name if order.assigned_to else None,
        rating=order.rating,
        review=order.review,
        version=order.version,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


@app.get("/")
def read_root():
    return {"message": "Cafeteria API is working!"}


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "error", "message": "Database unavailable"},
        )
    return {
        "status": "ok",
        "message": "API is running",
        "timestamp": utcnow().isoformat(),
        "redis_available": redis_client.is_available(),
    }


@app.get("/cache/info")
def get_cache_info(current_user: models.User = Depends(require_admin)):
    return redis_client.get_cache_info()


# ========== Accounts ==========

@app.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(user: UserCreate, db: Session = Depends(get_db)):
    if db.query(models.User).filter(models.User.email == user.email).first():
        raise errors.ValidationFailed("Email already registered")

    db_user = models.User(
        email=user.email,
        password=auth.get_password_hash(user.password),
        name=user.name,
        role=Role.STUDENT.value,
        student_id=user.student_id,
        phone=user.phone,
        address=user.address,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info("User registered: %s (id=%s)", db_user.email, db_user.id)
    return db_user


@app.post("/login")
def login(
    user: UserLogin,
    db: Session = Depends(get_db),
    remaining: int = Depends(rate_limit(config.LOGIN_RATE_LIMIT, config.LOGIN_RATE_WINDOW, "login")),
):
    db_user = auth.authenticate_user(db, user.email, user.password)
    if not db_user:
        raise errors.Unauthorized("Incorrect email or password")
    if not db_user.is_active:
        raise errors.Unauthorized("Account is deactivated")

    return {
        "access_token": auth.create_user_token(db_user),
        "token_type": "bearer",
        "user": UserResponse.model_validate(db_user),
    }


@app.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.put("/me", response_model=UserResponse)
def update_profile(
    profile: ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    for key, value in profile.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(current_user, key, value)
    db.commit()
    db.refresh(current_user)
    return current_user


@app.put("/me/password")
def change_password(
    password_data: PasswordChange,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    if not auth.verify_password(password_data.current_password, current_user.password):
        raise errors.ValidationFailed("Current password is incorrect")
    current_user.password = auth.get_password_hash(password_data.new_password)
    db.commit()
    return {"message": "Password updated successfully"}


# ========== User administration ==========

@app.get("/users", response_model=List[UserResponse])
def get_users(
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    query = db.query(models.User)
    if role is not None:
        query = query.filter(models.User.role == role.value)
    if is_active is not None:
        query = query.filter(models.User.is_active.is_(is_active))
    return query.order_by(models.User.id).all()


@app.put("/users/{user_id}/role", response_model=UserResponse)
def update_user_role(
    user_id: int,
    update: RoleUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    if user_id == current_user.id:
        raise errors.ValidationFailed("Cannot change your own role")
    user = get_user_or_404(db, user_id)
    user.role = update.role.value
    db.commit()
    db.refresh(user)
    logger.info("User %s role set to %s by admin %s", user.id, user.role, current_user.id)
    return user


@app.put("/users/{user_id}/status", response_model=UserResponse)
def update_user_status(
    user_id: int,
    update: StatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_admin),
):
    if user_id == current_user.id and not update.is_active:
        raise errors.ValidationFailed("Cannot deactivate your own account")
    user = get_user_or_404(db, user_id)
    user.is_active = update.is_active
    db.commit()
    db.refresh(user)
    logger.info("User %s %s by admin %s", user.id, "activated" if user.is_active else "deactivated", current_user.id)
    return user


# ========== Menu ==========

@app.get("/menu", response_model=MenuListResponse)
def get_menu(
    category: Optional[Category] = None,
    available: Optional[bool] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort_by: str = Query("created_at", pattern="^(name|price|rating|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    cache_key = redis_client.menu_key({
        "category": category.value if category else None,
        "available": available,
        "search": search,
        "min_price": min_price,
        "max_price": max_price,
        "sort_by": sort_by,
        "sort_order": sort_order,
        "page": page,
        "limit": limit,
    })
    cached = redis_client.get_cached_menu(cache_key)
    if cached:
        return cached

    query = db.query(models.MenuItem)
    if category is not None:
        query = query.filter(models.MenuItem.category == category.value)
    if available is not None:
        query = query.filter(models.MenuItem.is_available.is_(available))
    if min_price is not None:
        query = query.filter(models.MenuItem.price >= min_price)
    if max_price is not None:
        query = query.filter(models.MenuItem.price <= max_price)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(models.MenuItem.name.ilike(pattern), models.MenuItem.description.ilike(pattern)))

    column = getattr(models.MenuItem, sort_by)
    query = query.order_by(column.asc() if sort_order == "asc" else column.desc(), models.MenuItem.id)

    menu_items, pagination = paginate(query, page, limit)
    response = MenuListResponse(
        menu_items=[MenuItemResponse.model_validate(item) for item in menu_items],
        pagination=pagination,
    )
    redis_client.cache_menu(cache_key, jsonable_encoder(response))
    return response


@app.get("/menu/categories", response_model=List[CategorySummary])
def get_menu_categories(db: Session = Depends(get_db)):
    rows = (
        db.query(
            models.MenuItem.category,
            func.count(models.MenuItem.id),
            func.sum(case((models.MenuItem.is_available.is_(True), 1), else_=0)),
        )
        .group_by(models.MenuItem.category)
        .order_by(models.MenuItem.category)
        .all()
    )
    return [
        CategorySummary(category=category, count=count, available_count=int(available_count or 0))
        for category, count, available_count in rows
    ]


@app.get("/menu/{item_id}", response_model=MenuItemResponse)
def get_menu_item(item_id: int, db: Session = Depends(get_db)):
    return get_menu_item_or_404(db, item_id)


@app.post("/menu", response_model=MenuItemResponse, status_code=status.HTTP_201_CREATED)
def create_menu_item(
    menu_item: MenuItemCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_staff),
):
    data = menu_item.model_dump(exclude_none=True)
    data["category"] = menu_item.category.value
    data["price"] = Decimal(str(menu_item.price))

    try:
        db_item = models.MenuItem(created_by_id=current_user.id, **data)
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error creating menu item")
        raise HTTPException(status_code=500, detail="Server error while creating menu item")

    redis_client.invalidate_menu_cache()
    logger.info("Menu item %s created by user %s", db_item.id, current_user.id)
    return db_item


@app.put("/menu/{item_id}", response_model=MenuItemResponse)
def update_menu_item(
    item_id: int,
    menu_item: MenuItemUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_staff),
):
    db_item = get_menu_item_or_404(db, item_id)

    try:
        for key, value in menu_item.model_dump(exclude_unset=True, exclude_none=True).items():
            if key == "category":
                value = Category(value).value
            elif key == "price":
                value = Decimal(str(value))
            setattr(db_item, key, value)
        db.commit()
        db.refresh(db_item)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error updating menu item %s", item_id)
        raise HTTPException(status_code=500, detail="Server error while updating menu item")

    redis_client.invalidate_menu_cache()
    return db_item


@app.delete("/menu/{item_id}")
def delete_menu_item(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_staff),
):
    db_item = get_menu_item_or_404(db, item_id)

    try:
        # Placed orders keep their name/price snapshots
        db.query(models.OrderItem).filter(models.OrderItem.menu_item_id == item_id).update(
            {models.OrderItem.menu_item_id: None}, synchronize_session=False
        )
        db.delete(db_item)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error deleting menu item %s", item_id)
        raise HTTPException(status_code=500, detail="Server error while deleting menu item")

    redis_client.invalidate_menu_cache()
    logger.info("Menu item %s deleted by user %s", item_id, current_user.id)
    return {"message": "Menu item deleted successfully"}


@app.post("/menu/{item_id}/toggle-availability")
def toggle_menu_item_availability(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_staff),
):
    db_item = get_menu_item_or_404(db, item_id)
    db_item.is_available = not db_item.is_available
    db.commit()
    db.refresh(db_item)

    redis_client.invalidate_menu_cache()
    return {
        "message": f"Menu item {'enabled' if db_item.is_available else 'disabled'} successfully",
        "menu_item": MenuItemResponse.model_validate(db_item),
    }


# ========== Orders ==========

@app.get("/orders", response_model=OrderListResponse)
def get_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    order_type: Optional[OrderType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    query = db.query(models.Order)
    if not Role(current_user.role).is_staff:
        query = query.filter(models.Order.customer_id == current_user.id)
    if status_filter is not None:
        query = query.filter(models.Order.status == status_filter.value)
    if order_type is not None:
        query = query.filter(models.Order.order_type == order_type.value)
    if start_date is not None:
        query = query.filter(models.Order.created_at >= start_date)
    if end_date is not None:
        query = query.filter(models.Order.created_at <= end_date)

    query = query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
    orders, pagination = paginate(query, page, limit)
    return OrderListResponse(orders=[get_order_response(order) for order in orders], pagination=pagination)


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    order = get_order_or_404(db, order_id)
    check_order_access(current_user, order)
    return get_order_response(order)


@app.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
def create_order(
    order: OrderCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    db_order = lifecycle.place_order(
        db,
        current_user,
        order.items,
        order.order_type,
        payment_method=order.payment_method,
        delivery_address=order.delivery_address,
        special_instructions=order.special_instructions,
    )
    return get_order_response(db_order)


@app.put("/orders/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: int,
    update: OrderStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_staff),
):
    order = get_order_or_404(db, order_id)
    lifecycle.request_transition(
        db,
        order,
        update.status,
        current_user,
        notes=update.staff_notes,
        expected_status=update.expected_status,
    )
    return get_order_response(order)


@app.post("/orders/{order_id}/payment", status_code=status.HTTP_202_ACCEPTED)
def process_payment(
    order_id: int,
    payment: PaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    order = get_order_or_404(db, order_id)
    check_order_access(current_user, order)

    background_tasks.add_task(lifecycle.settle_payment, order.id, payment.payment_status.value)
    logger.info("Payment for order %s submitted by user %s", order.order_number, current_user.id)
    return {
        "message": "Payment processing initiated",
        "order_id": order.id,
        "payment_status": "processing",
    }


@app.post("/orders/{order_id}/review", response_model=OrderResponse)
def review_order(
    order_id: int,
    review: ReviewCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    order = get_order_or_404(db, order_id)
    lifecycle.submit_review(db, order, current_user, review.rating, review.review)
    return get_order_response(order)


# ========== Real-time notifications ==========

def handle_socket_message(subscriber, user, raw: str):
    try:
        message = json.loads(raw)
    except ValueError:
        message = None
    if not isinstance(message, dict):
        subscriber.deliver({"event": "error", "detail": "Messages must be JSON objects"})
        return

    action = message.get("action")
    if action in ("join-order-room", "leave-order-room"):
        try:
            room = order_room(int(message.get("order_id")))
        except (TypeError, ValueError):
            subscriber.deliver({"event": "error", "detail": "order_id is required"})
            return
        if action == "join-order-room":
            hub.join(subscriber, room)
            subscriber.deliver({"event": "joined", "room": room})
        else:
            hub.leave(subscriber, room)
            subscriber.deliver({"event": "left", "room": room})
    elif action == "join-staff-room":
        if user is None or not Role(user.role).is_staff:
            subscriber.deliver({"event": "error", "detail": "Staff access required"})
            return
        hub.join(subscriber, STAFF_ROOM)
        subscriber.deliver({"event": "joined", "room": STAFF_ROOM})
    else:
        subscriber.deliver({"event": "error", "detail": f"Unknown action: {action}"})


def authenticate_socket(token: str) -> models.User:
    """Resolve the socket's token with a session that is closed before the socket is accepted."""
    db = SessionLocal()
    try:
        return auth.authenticate_token(db, token)
    finally:
        db.close()


async def forward_events(websocket: WebSocket, subscriber):
    try:
        while True:
            message = await subscriber.next_message()
            await websocket.send_json(message)
    except (WebSocketDisconnect, RuntimeError):
        pass


@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = None):
    user = None
    if token:
        try:
            user = await run_in_threadpool(authenticate_socket, token)
        except errors.Unauthorized as e:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
            return

    await websocket.accept()
    subscriber = hub.connect(user)
    sender = asyncio.create_task(forward_events(websocket, subscriber))
    try:
        while True:
            raw = await websocket.receive_text()
            handle_socket_message(subscriber, user, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(subscriber)
        sender.cancel()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
