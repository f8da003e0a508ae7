from typing import Union

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .database import get_db
from .inventory_cache import InventoryCache
from .reservations import (
    InsufficientStock,
    InvalidSize,
    ProductNotFound,
    ReservationService,
)


def get_inventory_cache(request: Request) -> InventoryCache:
    return request.app.state.inventory_cache


def get_reservations(
    db: Session = Depends(get_db),
    cache: InventoryCache = Depends(get_inventory_cache),
) -> ReservationService:
    return ReservationService(db, cache)


def outcome_error(outcome: Union[ProductNotFound, InvalidSize, InsufficientStock]) -> HTTPException:
    """Translate a rejected reservation into the HTTP error returned to clients."""
    if isinstance(outcome, ProductNotFound):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "product_not_found", "product_id": outcome.product_id},
        )
    if isinstance(outcome, InvalidSize):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_size", "product_id": outcome.product_id, "size": outcome.size},
        )
    if outcome.available == 0:
        message = f"Size {outcome.size} is out of stock."
    else:
        message = f"Insufficient stock. Only {outcome.available} items available in size {outcome.size}."
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "error": "insufficient_stock",
            "message": message,
            "product_id": outcome.product_id,
            "size": outcome.size,
            "available": outcome.available,
            "requested": outcome.requested,
        },
    )
