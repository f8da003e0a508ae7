import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_admin, get_current_user
from ..database import get_db
from ..deps import get_reservations, outcome_error
from ..messaging import emit_order_event
from ..reservations import ReservationService, StockLine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)

# shipped stock does not come back by cancelling
NOT_CANCELLABLE = {"shipped", "delivered"}


def _order_lines(order):
    return [StockLine(i.product_id, i.size, i.quantity, i.id) for i in order.items]


def _not_cancellable(db_order) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Order {db_order.id} is {db_order.status} and can no longer be cancelled",
    )


def _cancel(db: Session, reservations: ReservationService, db_order):
    if db_order.status in NOT_CANCELLABLE:
        raise _not_cancellable(db_order)
    newly_cancelled = crud.mark_order_cancelled(db, db_order, NOT_CANCELLABLE | {"cancelled"})
    if db_order.status != "cancelled":
        # shipped while this request was running
        raise _not_cancellable(db_order)
    if newly_cancelled:
        emit_order_event("order.cancelled", db_order)

    # also finishes a cancel whose releases failed part way; released lines are skipped
    reservations.release_lines(_order_lines(db_order))
    db.refresh(db_order)
    return db_order


@router.post("/", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def place_order(
    body: schemas.OrderCreate,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    """Place an order from explicit lines.

    Stock is reserved line by line; if any line cannot be reserved, the
    lines already reserved are released and nothing is ordered.
    """
    products = crud.get_products_by_ids(db, {line.product_id for line in body.items})
    lines = [StockLine(line.product_id, line.size, line.quantity) for line in body.items]

    outcome = reservations.reserve_lines(lines)
    if not outcome.ok:
        raise outcome_error(outcome)

    items_data = []
    for line in body.items:
        product = products[line.product_id]
        items_data.append(
            {
                "product_id": line.product_id,
                "product_name": product.name,
                "size": line.size,
                "color": line.color,
                "quantity": line.quantity,
                "price": product.price,
            }
        )

    try:
        db_order = crud.create_order(db=db, user_id=current_user["id"], items_data=items_data)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Order creation failed; releasing reserved stock")
        reservations.release_lines(lines)
        raise

    emit_order_event("order.placed", db_order)
    return db_order


@router.post("/checkout", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def checkout_my_cart(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Turn the current cart into an order.

    Cart lines already hold their stock, so the stock is carried over as is
    and the cart is emptied.
    """
    cart = crud.get_cart(db, current_user["id"])
    if cart is None or not cart.items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Your cart is empty")

    db_order = crud.checkout_cart(db, cart)
    emit_order_event("order.placed", db_order)
    return db_order


@router.get("/", response_model=schemas.OrderListResponse)
def get_orders(
    skip: int = 0,
    limit: int = 100,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    orders = crud.get_orders(db=db, skip=skip, limit=limit)
    total = crud.get_order_count(db=db)

    return {
        "orders": orders,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/me", response_model=schemas.OrderListResponse)
def get_user_orders(
    skip: int = 0,
    limit: int = 100,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    user_id = current_user["id"]

    orders = crud.get_orders_by_user(db=db, user_id=user_id, skip=skip, limit=limit)
    total = crud.get_user_order_count(db=db, user_id=user_id)

    return {
        "orders": orders,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/{order_id:int}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    if db_order.user_id != current_user["id"] and not current_user.get("is_admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not allowed to view this order"
        )
    return db_order


@router.post("/{order_id:int}/cancel", response_model=schemas.OrderOut)
def cancel_my_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    """Cancel one of the current user's orders and return its stock."""
    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    if db_order.user_id != current_user["id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not allowed to cancel this order"
        )
    return _cancel(db, reservations, db_order)


@router.patch("/{order_id:int}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    status_update: schemas.OrderUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    if status_update.status is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'status' is required",
        )

    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )

    new_status = status_update.status.value
    if new_status == "cancelled":
        return _cancel(db, reservations, db_order)
    if db_order.status == "cancelled":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order {order_id} is cancelled; its stock has been released",
        )
    return crud.update_order_status(db, db_order, new_status)
