from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import get_current_admin
from ..crud import create_product, delete_product, get_product, get_products, update_product
from ..database import get_db
from ..deps import get_inventory_cache, get_reservations
from ..inventory_cache import InventoryCache
from ..reservations import ReservationService
from ..schemas import ProductCreate, ProductOut, ProductUpdate
from ..stock import ProductInventory, resolve_available_stock

router = APIRouter(prefix="/products", tags=["Products"])


def _product_error(e: ValueError) -> HTTPException:
    if str(e) == "duplicate_product_name":
        return HTTPException(status_code=409, detail="Product name already exists")
    if str(e) == "name_required":
        return HTTPException(status_code=400, detail="Product name is required")
    return HTTPException(status_code=400, detail=str(e))


def _with_availability(product, available: Dict[str, int]) -> ProductOut:
    out = ProductOut.model_validate(product)
    out.available_by_size = available
    return out


@router.post("/", response_model=ProductOut, status_code=201)
def Create_Product_Only_Admin(
    body: ProductCreate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        product = create_product(db, body.model_dump())
    except ValueError as e:
        raise _product_error(e)
    except IntegrityError:
        # DB-level unique constraint (race conditions)
        db.rollback()
        raise HTTPException(status_code=409, detail="Product name already exists")
    inventory = ProductInventory.from_product(product)
    return _with_availability(product, {s: resolve_available_stock(inventory, s) for s in inventory.sizes})


@router.get("/", response_model=list[ProductOut])
def View_Products(
    skip: int = Query(0, ge=0, description="**Skip** number of products"),
    limit: int = Query(100, ge=1, le=1000, description="**Limit** number of products"),
    search: Optional[str] = Query(None, description="**Search** in name, description, category or brand"),
    db: Session = Depends(get_db),
):
    result = []
    for product in get_products(db, skip=skip, limit=limit, search=search):
        inventory = ProductInventory.from_product(product)
        result.append(
            _with_availability(product, {s: resolve_available_stock(inventory, s) for s in inventory.sizes})
        )
    return result


@router.get("/{product_id}", response_model=ProductOut)
def View_Product(
    product_id: int,
    db: Session = Depends(get_db),
    reservations: ReservationService = Depends(get_reservations),
):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    available = {}
    for size in product.sizes or []:
        outcome = reservations.available(product_id, size)
        available[size] = outcome.stock if outcome.ok else 0
    return _with_availability(product, available)


@router.patch("/{product_id}", response_model=ProductOut)
def Update_Product_Only_Admin(
    product_id: int,
    body: ProductUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    cache: InventoryCache = Depends(get_inventory_cache),
):
    try:
        product = update_product(db, product_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _product_error(e)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Product name already exists")
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    cache.invalidate(product_id)
    inventory = ProductInventory.from_product(product)
    return _with_availability(product, {s: resolve_available_stock(inventory, s) for s in inventory.sizes})


@router.delete("/{product_id}", response_model=ProductOut)
def Delete_Product_Only_Admin(
    product_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    cache: InventoryCache = Depends(get_inventory_cache),
):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    out = ProductOut.model_validate(product)
    delete_product(db, product_id)
    cache.invalidate(product_id)
    return out
