import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_user
from ..database import get_db
from ..deps import get_reservations, outcome_error
from ..reservations import InsufficientStock, InvalidSize, ProductNotFound, ReservationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cart", tags=["Cart"])


def _cart_out(cart) -> schemas.CartOut:
    return schemas.CartOut(
        id=cart.id,
        user_id=cart.user_id,
        items=[schemas.CartItemOut.model_validate(i) for i in cart.items],
        total_amount=crud.cart_total(cart),
    )


def _require_cart(db: Session, user_id: int):
    cart = crud.get_cart(db, user_id)
    if cart is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cart not found")
    return cart


def _require_item(cart, item_id: int):
    item = crud.get_cart_item(cart, item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found in cart")
    return item


def _compensate(action, product_id: int, size: str, quantity: int) -> None:
    """Undo a stock change whose cart write failed."""
    outcome = action(product_id, size, quantity)
    if not outcome.ok:
        logger.warning(
            "Could not undo stock change of %d for product %s size %s: %s",
            quantity, product_id, size, outcome,
        )


@router.get("/", response_model=schemas.CartOut)
def get_my_cart(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return the current user's cart.

    Lines whose product was deleted, or whose size the product no longer
    offers, are dropped. Remaining lines keep their reserved quantity.
    """
    cart = crud.get_or_create_cart(db, current_user["id"])
    products = crud.get_products_by_ids(db, {i.product_id for i in cart.items})

    stale = []
    for item in cart.items:
        product = products.get(item.product_id)
        if product is None or item.size not in (product.sizes or []):
            stale.append(item)
    if stale:
        logger.info("Dropping %d stale line(s) from cart %s", len(stale), cart.id)
        cart = crud.remove_cart_items(db, cart, stale)
    return _cart_out(cart)


@router.post("/", response_model=schemas.CartOut, status_code=status.HTTP_201_CREATED)
def add_to_cart(
    product_id: int = Form(..., gt=0, description="Product ID"),
    size: str = Form(..., min_length=1, description="Size label"),
    color: Optional[str] = Form(None, description="Color (optional)"),
    quantity: int = Form(..., gt=0, description="Quantity to add"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    """Add a product/size to the cart, holding the stock for it.

    Adding a product/size/color already in the cart increases that line.
    """
    product = crud.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    cart = crud.get_or_create_cart(db, current_user["id"])

    outcome = reservations.reserve(product_id, size, quantity)
    if not outcome.ok:
        raise outcome_error(outcome)

    try:
        product = crud.get_product(db, product_id)
        crud.add_cart_item(db, cart, product, size=size, color=color, quantity=quantity)
    except SQLAlchemyError:
        db.rollback()
        _compensate(reservations.release, product_id, size, quantity)
        raise
    return _cart_out(cart)


@router.put("/{item_id}", response_model=schemas.CartOut)
def update_cart_item(
    item_id: int,
    quantity: int = Form(..., gt=0, description="New quantity"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    cart = _require_cart(db, current_user["id"])
    item = _require_item(cart, item_id)
    product_id, size, delta = item.product_id, item.size, quantity - item.quantity

    if delta > 0:
        outcome = reservations.reserve(product_id, size, delta)
        if not outcome.ok:
            raise outcome_error(outcome)
    elif delta < 0:
        outcome = reservations.release(product_id, size, -delta)
        if isinstance(outcome, ProductNotFound):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product no longer exists")

    try:
        cart = crud.set_cart_item_quantity(db, cart, item, quantity)
    except SQLAlchemyError:
        db.rollback()
        if delta > 0:
            _compensate(reservations.release, product_id, size, delta)
        elif delta < 0:
            _compensate(reservations.reserve, product_id, size, -delta)
        raise
    return _cart_out(cart)


@router.delete("/{item_id}", response_model=schemas.CartOut)
def remove_cart_item(
    item_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    cart = _require_cart(db, current_user["id"])
    item = _require_item(cart, item_id)

    outcome = reservations.release(item.product_id, item.size, item.quantity)
    if not outcome.ok:
        logger.info("Cart item %s removed without release: %s", item_id, outcome)

    cart = crud.remove_cart_items(db, cart, [item])
    return _cart_out(cart)


@router.delete("/", response_model=schemas.CartOut)
def clear_cart(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    cart = crud.get_or_create_cart(db, current_user["id"])
    # one line at a time so a store failure leaves released lines removed
    for item in list(cart.items):
        outcome = reservations.release(item.product_id, item.size, item.quantity)
        if not outcome.ok:
            logger.info("Cart item %s removed without release: %s", item.id, outcome)
        cart = crud.remove_cart_items(db, cart, [item])
    return _cart_out(cart)


def _skip_reason(outcome) -> str:
    if isinstance(outcome, ProductNotFound):
        return "product_not_found"
    if isinstance(outcome, InvalidSize):
        return "invalid_size"
    return "out_of_stock"


@router.post("/merge", response_model=schemas.CartMergeResponse)
def merge_guest_cart(
    body: schemas.CartMergeRequest,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    """Merge a guest cart into the user's cart after login.

    Each guest line is held up to the stock still available; lines that
    cannot be held at all are reported under ``skipped``.
    """
    cart = crud.get_or_create_cart(db, current_user["id"])
    merged, skipped = [], []

    for guest in body.items:
        quantity = guest.quantity
        outcome = reservations.reserve(guest.product_id, guest.size, quantity)
        if isinstance(outcome, InsufficientStock) and outcome.available > 0:
            quantity = outcome.available
            outcome = reservations.reserve(guest.product_id, guest.size, quantity)
        if not outcome.ok:
            skipped.append(
                schemas.MergeSkip(product_id=guest.product_id, size=guest.size, reason=_skip_reason(outcome))
            )
            continue

        try:
            product = crud.get_product(db, guest.product_id)
            crud.add_cart_item(db, cart, product, size=guest.size, color=guest.color, quantity=quantity)
        except SQLAlchemyError:
            db.rollback()
            _compensate(reservations.release, guest.product_id, guest.size, quantity)
            raise
        merged.append(guest.model_copy(update={"quantity": quantity}))

    db.refresh(cart)
    return schemas.CartMergeResponse(cart=_cart_out(cart), merged=merged, skipped=skipped)
