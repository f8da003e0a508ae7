import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .. import schemas
from ..auth import get_current_admin
from ..deps import get_inventory_cache, get_reservations, outcome_error
from ..inventory_cache import InventoryCache
from ..reservations import ReservationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/inventory", tags=["Inventory"])


@router.get("/cache/stats", response_model=schemas.CacheStatsOut)
def cache_stats(
    current_admin: Dict = Depends(get_current_admin),
    cache: InventoryCache = Depends(get_inventory_cache),
):
    return cache.stats()


@router.delete("/cache", response_model=schemas.CacheInvalidateOut)
def clear_inventory_cache(
    product_id: Optional[int] = Query(None, gt=0, description="Only this product"),
    size: Optional[str] = Query(None, min_length=1, description="Only this size (needs product_id)"),
    current_admin: Dict = Depends(get_current_admin),
    cache: InventoryCache = Depends(get_inventory_cache),
):
    """Force-refresh cached stock without restarting the service."""
    if size and product_id is None:
        raise HTTPException(status_code=400, detail="size requires product_id")
    cleared = cache.invalidate(product_id, size)
    logger.info("Inventory cache cleared by %s: product=%s size=%s (%d entries)",
                current_admin.get("username"), product_id, size, cleared)
    return {"cleared": cleared, "product_id": product_id, "size": size}


@router.get("/{product_id}/{size}", response_model=schemas.StockOut)
def get_available_stock(
    product_id: int,
    size: str,
    current_admin: Dict = Depends(get_current_admin),
    reservations: ReservationService = Depends(get_reservations),
):
    outcome = reservations.available(product_id, size)
    if not outcome.ok:
        raise outcome_error(outcome)
    return {"product_id": product_id, "size": size, "available": outcome.stock}
