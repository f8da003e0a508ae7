from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .models import Cart, CartItem, Order, OrderItem, Product, ProductSize
from .stock import (
    ProductInventory,
    complete_size_inventory,
    distribute_stock,
)


# -----------------------------
# Products
# -----------------------------

def get_product_by_name(db: Session, name: str):
    normalized = (name or "").strip()
    if not normalized:
        return None
    return (
        db.query(Product)
        .filter(func.lower(Product.name) == normalized.lower())
        .first()
    )


def _unique_sizes(sizes: Optional[List[str]]) -> List[str]:
    seen: List[str] = []
    for size in sizes or []:
        size = str(size).strip()
        if size and size not in seen:
            seen.append(size)
    return seen


def _write_size_stock(product: Product, counts: Dict[str, int]) -> None:
    """Make the product's size rows match ``counts`` and re-derive ``stock``."""
    existing = {row.size: row for row in product.size_stock}
    for size, row in existing.items():
        if size not in counts:
            product.size_stock.remove(row)
    for size, quantity in counts.items():
        row = existing.get(size)
        if row is None:
            product.size_stock.append(ProductSize(size=size, quantity=quantity))
        else:
            row.quantity = quantity
    product.stock = sum(counts.values())


def _apply_stock_fields(
    product: Product,
    *,
    sizes: List[str],
    stock: Optional[int],
    size_inventory: Optional[Dict[str, Any]],
) -> None:
    product.sizes = sizes
    if not sizes:
        _write_size_stock(product, {})
        product.stock = max(0, int(stock if stock is not None else product.stock or 0))
        return

    if size_inventory is not None:
        counts = complete_size_inventory(stock or 0, sizes, size_inventory)
    elif stock is not None:
        counts = distribute_stock(stock, sizes)
    else:
        # keep the counts of sizes that survive, spread what is left over new ones
        counts = complete_size_inventory(product.stock or 0, sizes, product.size_inventory)
    _write_size_stock(product, counts)


def create_product(db: Session, product_data: dict):
    # Enforce unique product name (case-insensitive)
    data = dict(product_data)
    name = (data.pop("name", None) or "").strip()
    if not name:
        raise ValueError("name_required")

    if get_product_by_name(db, name):
        raise ValueError("duplicate_product_name")

    sizes = _unique_sizes(data.pop("sizes", None))
    stock = int(data.pop("stock", 0) or 0)
    size_inventory = data.pop("size_inventory", None)

    db_product = Product(**{**data, "name": name, "stock": 0})
    _apply_stock_fields(db_product, sizes=sizes, stock=stock, size_inventory=size_inventory)
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def get_product(db: Session, product_id: int):
    return db.query(Product).filter(Product.id == product_id).first()


def get_products_by_ids(db: Session, product_ids) -> Dict[int, Product]:
    ids = {int(pid) for pid in product_ids}
    if not ids:
        return {}
    return {p.id: p for p in db.query(Product).filter(Product.id.in_(ids)).all()}


def get_products(db: Session, skip: int = 0, limit: int = 100, search: str = None):
    query = db.query(Product)
    if search:
        search_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Product.name.ilike(search_pattern),
                Product.description.ilike(search_pattern),
                Product.category.ilike(search_pattern),
                Product.brand.ilike(search_pattern),
            )
        )
    return query.order_by(Product.id).offset(skip).limit(limit).all()


def update_product(db: Session, product_id: int, update_data: dict):
    db_product = get_product(db, product_id)
    if not db_product:
        return None

    data = {k: v for k, v in update_data.items() if v is not None}

    # Enforce unique name on rename (case-insensitive)
    if "name" in data:
        new_name = str(data["name"]).strip()
        if not new_name:
            raise ValueError("name_required")
        existing = (
            db.query(Product)
            .filter(func.lower(Product.name) == new_name.lower())
            .filter(Product.id != product_id)
            .first()
        )
        if existing:
            raise ValueError("duplicate_product_name")
        data["name"] = new_name

    stock_fields = {k: data.pop(k) for k in ("sizes", "stock", "size_inventory") if k in data}
    for key, value in data.items():
        setattr(db_product, key, value)

    if stock_fields:
        sizes = _unique_sizes(stock_fields.get("sizes", db_product.sizes))
        _apply_stock_fields(
            db_product,
            sizes=sizes,
            stock=stock_fields.get("stock"),
            size_inventory=stock_fields.get("size_inventory"),
        )

    db.commit()
    db.refresh(db_product)
    return db_product


def delete_product(db: Session, product_id: int):
    db_product = get_product(db, product_id)
    if db_product:
        db.delete(db_product)
        db.commit()
    return db_product


def ensure_size_inventory(db: Session) -> List[int]:
    """Give every sized product a count for each declared size.

    Missing sizes get the stock not yet assigned to a size, spread with the
    remainder going to the first sizes. Returns the ids of repaired products.
    """
    repaired: List[int] = []
    for product in db.query(Product).order_by(Product.id).all():
        sizes = list(product.sizes or [])
        if not sizes:
            continue
        inventory = product.size_inventory
        if (
            set(inventory) == set(sizes)
            and (product.stock or 0) == sum(inventory.values())
        ):
            continue
        counts = complete_size_inventory(product.stock or 0, sizes, inventory)
        _write_size_stock(product, counts)
        repaired.append(product.id)
    db.commit()
    return repaired


# -----------------------------
# Per-size stock (reservation writes)
# -----------------------------

def load_inventory(db: Session, product_id: int) -> Optional[ProductInventory]:
    # refreshed even if this session already holds the product
    product = (
        db.query(Product)
        .options(selectinload(Product.size_stock))
        .populate_existing()
        .filter(Product.id == product_id)
        .first()
    )
    if not product:
        return None
    return ProductInventory.from_product(product)


def _apply_size_delta(db: Session, product_id: int, size: str, delta: int) -> ProductInventory:
    product = (
        db.query(Product)
        .filter(Product.id == product_id)
        .options(selectinload(Product.size_stock))
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not product:
        db.rollback()
        raise ValueError(f"product_not_found:{product_id}")

    sizes = list(product.sizes or [])
    if size not in sizes:
        db.rollback()
        raise ValueError(f"invalid_size:{product_id}")

    # Sizes without a row get the stock not yet assigned to a size, remainder
    # first, so the product total is unchanged and the SUM below covers every size.
    existing = product.size_inventory
    counts = complete_size_inventory(product.stock or 0, sizes, existing)
    for missing in sizes:
        if missing not in existing:
            product.size_stock.append(ProductSize(size=missing, quantity=counts[missing]))
    db.flush()

    stmt = (
        update(ProductSize)
        .where(ProductSize.product_id == product_id, ProductSize.size == size)
        .values(quantity=ProductSize.quantity + delta)
        .execution_options(synchronize_session=False)
    )
    if delta < 0:
        stmt = stmt.where(ProductSize.quantity >= -delta)
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        raise ValueError(f"insufficient_stock:{product_id}")

    total = (
        select(func.coalesce(func.sum(ProductSize.quantity), 0))
        .where(ProductSize.product_id == product_id, ProductSize.size.in_(sizes))
        .scalar_subquery()
    )
    db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=total)
        .execution_options(synchronize_session=False)
    )

    rows = db.execute(
        select(ProductSize.size, ProductSize.quantity).where(ProductSize.product_id == product_id)
    ).all()
    new_total = db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()
    db.commit()
    return ProductInventory(
        product_id=product_id,
        total_stock=int(new_total),
        sizes=sizes,
        size_inventory={s: int(q) for s, q in rows if s in sizes},
    )


def apply_size_delta(db: Session, product_id: int, size: str, delta: int) -> ProductInventory:
    """Add ``delta`` to one size's stock and re-derive the product total.

    A negative delta only applies while the size holds at least ``-delta``
    units; check and write are one conditional UPDATE, committed together
    with the new total.

    Raises ValueError("product_not_found:..."), ValueError("invalid_size:...")
    or ValueError("insufficient_stock:...").
    """
    try:
        return _apply_size_delta(db, product_id, size, delta)
    except IntegrityError:
        # a concurrent request created the missing size rows first
        db.rollback()
    return _apply_size_delta(db, product_id, size, delta)


def _release_order_item(db: Session, item_id: int, product_id: int, size: str, quantity: int):
    claimed = db.execute(
        update(OrderItem)
        .where(OrderItem.id == item_id, OrderItem.stock_released.is_(False))
        .values(stock_released=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        return None
    return _apply_size_delta(db, product_id, size, quantity)


def release_order_item(
    db: Session, item_id: int, product_id: int, size: str, quantity: int
) -> Optional[ProductInventory]:
    """Give an order line's stock back, at most once.

    The line is marked released in the same commit that adds its quantity
    back, so a failed attempt leaves it unmarked. Returns None when the line
    was already released. Raises the same ValueError codes as
    :func:`apply_size_delta`.
    """
    try:
        return _release_order_item(db, item_id, product_id, size, quantity)
    except IntegrityError:
        db.rollback()
    return _release_order_item(db, item_id, product_id, size, quantity)


# -----------------------------
# Carts
# -----------------------------

def get_cart(db: Session, user_id: int) -> Optional[Cart]:
    return db.query(Cart).filter(Cart.user_id == user_id).first()


def get_or_create_cart(db: Session, user_id: int) -> Cart:
    cart = get_cart(db, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        db.add(cart)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return get_cart(db, user_id)
        db.refresh(cart)
    return cart


def find_cart_item(cart: Cart, product_id: int, size: str, color: Optional[str] = None) -> Optional[CartItem]:
    for item in cart.items:
        if item.product_id == product_id and item.size == size and (not color or item.color == color):
            return item
    return None


def get_cart_item(cart: Cart, item_id: int) -> Optional[CartItem]:
    return next((item for item in cart.items if item.id == item_id), None)


def add_cart_item(
    db: Session,
    cart: Cart,
    product: Product,
    *,
    size: str,
    color: Optional[str],
    quantity: int,
) -> CartItem:
    item = find_cart_item(cart, product.id, size, color)
    if item is None:
        item = CartItem(
            product_id=product.id,
            product_name=product.name,
            price=product.price,
            size=size,
            color=color,
            quantity=quantity,
        )
        cart.items.append(item)
    else:
        item.quantity += quantity
    db.commit()
    db.refresh(cart)
    return item


def set_cart_item_quantity(db: Session, cart: Cart, item: CartItem, quantity: int) -> Cart:
    item.quantity = quantity
    db.commit()
    db.refresh(cart)
    return cart


def remove_cart_items(db: Session, cart: Cart, items: List[CartItem]) -> Cart:
    for item in items:
        cart.items.remove(item)
    db.commit()
    db.refresh(cart)
    return cart


def cart_total(cart: Cart) -> Decimal:
    return sum((Decimal(str(i.price)) * i.quantity for i in cart.items), Decimal("0"))


# -----------------------------
# Orders
# -----------------------------

def create_order(db: Session, user_id: int, items_data: List[dict]) -> Order:
    # Calculate total amount
    total_amount = sum(
        (Decimal(str(item["price"])) * item["quantity"] for item in items_data),
        Decimal("0"),
    )

    db_order = Order(user_id=user_id, total_amount=total_amount, status="pending")
    for item_data in items_data:
        db_order.items.append(
            OrderItem(
                product_id=item_data["product_id"],
                product_name=item_data["product_name"],
                size=item_data["size"],
                color=item_data.get("color"),
                quantity=item_data["quantity"],
                price=item_data["price"],
            )
        )
    db.add(db_order)
    db.commit()
    db.refresh(db_order)
    return db_order


def checkout_cart(db: Session, cart: Cart) -> Order:
    """Move every cart line into a new order and empty the cart in one commit."""
    db_order = Order(user_id=cart.user_id, total_amount=cart_total(cart), status="pending")
    for item in list(cart.items):
        db_order.items.append(
            OrderItem(
                product_id=item.product_id,
                product_name=item.product_name,
                size=item.size,
                color=item.color,
                quantity=item.quantity,
                price=item.price,
            )
        )
        cart.items.remove(item)
    db.add(db_order)
    db.commit()
    db.refresh(db_order)
    return db_order


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_orders(db: Session, skip: int = 0, limit: int = 100) -> List[Order]:
    return db.query(Order).order_by(Order.id.desc()).offset(skip).limit(limit).all()


def get_orders_by_user(db: Session, user_id: int, skip: int = 0, limit: int = 100) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def update_order_status(db: Session, db_order: Order, new_status: str) -> Order:
    db_order.status = new_status
    db.commit()
    db.refresh(db_order)
    return db_order


def mark_order_cancelled(db: Session, db_order: Order, blocked_statuses) -> bool:
    """Set the order to "cancelled" unless it is in one of ``blocked_statuses``.

    Returns True only for the call that changed the status.
    """
    result = db.execute(
        update(Order)
        .where(Order.id == db_order.id, Order.status.notin_(list(blocked_statuses)))
        .values(status="cancelled")
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(db_order)
    return result.rowcount == 1


def get_order_count(db: Session) -> int:
    return db.query(Order).count()


def get_user_order_count(db: Session, user_id: int) -> int:
    return db.query(Order).filter(Order.user_id == user_id).count()
