"""Stock reservation and release.

Every cart and order path goes through :class:`ReservationService`: it
resolves the effective stock for a product/size (cache first, database on
miss), validates the request, applies the change with a single conditional
write and then brings the cache in line with what the database returned.

Validation problems come back as values (:class:`ProductNotFound`,
:class:`InvalidSize`, :class:`InsufficientStock`); only store outages raise
(:class:`TransientStoreFailure`).
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import ClassVar, Iterable, List, Optional, Tuple, Union

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from . import crud
from .inventory_cache import NOT_FOUND, InventoryCache, InventorySnapshot
from .stock import ProductInventory, resolve_available_stock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ok:
    stock: int
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class ProductNotFound:
    product_id: int
    ok: ClassVar[bool] = False


@dataclass(frozen=True)
class InvalidSize:
    product_id: int
    size: str
    ok: ClassVar[bool] = False


@dataclass(frozen=True)
class InsufficientStock:
    product_id: int
    size: str
    available: int
    requested: int
    ok: ClassVar[bool] = False


@dataclass(frozen=True)
class AlreadyReleased:
    item_id: int
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class LinesReserved:
    remaining: Tuple[int, ...]
    ok: ClassVar[bool] = True


Failure = Union[ProductNotFound, InvalidSize, InsufficientStock]


@dataclass(frozen=True)
class StockLine:
    product_id: int
    size: str
    quantity: int
    # order line whose stock this is; releases against it happen at most once
    item_id: Optional[int] = None


class TransientStoreFailure(Exception):
    """The database timed out or could not be reached; nothing was written."""


class ReservationService:
    def __init__(self, db: Session, cache: InventoryCache):
        self.db = db
        self.cache = cache

    @contextmanager
    def _store_call(self):
        try:
            yield
        except (OperationalError, PoolTimeoutError) as exc:
            self.db.rollback()
            logger.exception("Inventory store call failed")
            raise TransientStoreFailure(str(exc)) from exc

    def _warm(self, inventory: ProductInventory, size: str, stock: int, generation) -> None:
        explicit = {
            s: resolve_available_stock(inventory, s)
            for s, v in inventory.size_inventory.items()
            if v is not None and s in inventory.sizes
        }
        entries = {size: stock, None: InventorySnapshot(inventory.total_stock, explicit)}
        try:
            if not self.cache.warm(inventory.product_id, entries, generation):
                logger.debug("Product %s changed during the read; not caching it", inventory.product_id)
        except Exception:
            logger.exception("Inventory cache write failed for product %s", inventory.product_id)

    def available(self, product_id: int, size: str) -> Union[Ok, ProductNotFound, InvalidSize]:
        """Effective available stock for ``product_id``/``size``."""
        generation = None
        try:
            cached = self.cache.get(product_id, size)
            # taken before the read so writes that land during it are noticed
            generation = self.cache.generation(product_id)
        except Exception:
            logger.exception("Inventory cache read failed for product %s; using the database", product_id)
            cached = NOT_FOUND
        if cached is not NOT_FOUND:
            return Ok(int(cached))

        with self._store_call():
            inventory = crud.load_inventory(self.db, product_id)
        if inventory is None:
            return ProductNotFound(product_id)
        if size not in inventory.sizes:
            return InvalidSize(product_id, size)

        stock = resolve_available_stock(inventory, size)
        if generation is not None:
            self._warm(inventory, size, stock, generation)
        return Ok(stock)

    def reserve(self, product_id: int, size: str, quantity: int) -> Union[Ok, Failure]:
        if quantity <= 0:
            raise ValueError("quantity must be > 0")

        resolved = self.available(product_id, size)
        if not resolved.ok:
            logger.info("Reservation rejected: %s", resolved)
            return resolved
        if resolved.stock == 0 or quantity > resolved.stock:
            outcome = InsufficientStock(product_id, size, resolved.stock, quantity)
            logger.info("Reservation rejected: %s", outcome)
            return outcome

        try:
            with self._store_call():
                after = crud.apply_size_delta(self.db, product_id, size, -quantity)
        except ValueError as exc:
            return self._write_rejected(exc, product_id, size, quantity)

        self._sync_cache(product_id, size, -quantity, after)
        remaining = after.size_inventory[size]
        logger.debug("Reserved %d x product %s size %s, %d left", quantity, product_id, size, remaining)
        return Ok(remaining)

    def release(self, product_id: int, size: str, quantity: int) -> Union[Ok, ProductNotFound, InvalidSize]:
        if quantity <= 0:
            raise ValueError("quantity must be > 0")

        try:
            with self._store_call():
                after = crud.apply_size_delta(self.db, product_id, size, quantity)
        except ValueError as exc:
            return self._write_rejected(exc, product_id, size, quantity)
        return self._released(product_id, size, quantity, after)

    def release_order_line(self, line: StockLine) -> Union[Ok, AlreadyReleased, ProductNotFound, InvalidSize]:
        """Release an order line's stock unless an earlier call already did."""
        try:
            with self._store_call():
                after = crud.release_order_item(
                    self.db, line.item_id, line.product_id, line.size, line.quantity
                )
        except ValueError as exc:
            return self._write_rejected(exc, line.product_id, line.size, line.quantity)
        if after is None:
            return AlreadyReleased(line.item_id)
        return self._released(line.product_id, line.size, line.quantity, after)

    def _released(self, product_id: int, size: str, quantity: int, after: ProductInventory) -> Ok:
        self._sync_cache(product_id, size, quantity, after)
        remaining = after.size_inventory[size]
        logger.debug("Released %d x product %s size %s, %d left", quantity, product_id, size, remaining)
        return Ok(remaining)

    def reserve_lines(self, lines: Iterable[StockLine]) -> Union[LinesReserved, Failure]:
        """Reserve every line or none of them."""
        done: List[Tuple[StockLine, Ok]] = []
        for line in lines:
            try:
                outcome = self.reserve(line.product_id, line.size, line.quantity)
            except TransientStoreFailure:
                self._undo([prev for prev, _ in done])
                raise
            if not outcome.ok:
                self._undo([prev for prev, _ in done])
                return outcome
            done.append((line, outcome))
        return LinesReserved(tuple(o.stock for _, o in done))

    def release_lines(self, lines: Iterable[StockLine]) -> List[Union[Ok, AlreadyReleased, ProductNotFound, InvalidSize]]:
        outcomes = []
        for line in lines:
            if line.item_id is None:
                outcome = self.release(line.product_id, line.size, line.quantity)
            else:
                outcome = self.release_order_line(line)
            if not outcome.ok:
                logger.info("Nothing to release for %s: %s", line, outcome)
            outcomes.append(outcome)
        return outcomes

    def _undo(self, lines: List[StockLine]) -> None:
        first_error = None
        for line in reversed(lines):
            try:
                self.release(line.product_id, line.size, line.quantity)
            except TransientStoreFailure as exc:
                logger.error("Could not roll back reservation %s", line)
                first_error = first_error or exc
        if first_error is not None:
            raise first_error

    def _write_rejected(self, exc: ValueError, product_id: int, size: str, quantity: int) -> Failure:
        code = str(exc).split(":", 1)[0]
        self.cache.invalidate(product_id)
        if code == "product_not_found":
            return ProductNotFound(product_id)
        if code == "invalid_size":
            return InvalidSize(product_id, size)
        if code == "insufficient_stock":
            # the cache promised more than the store holds; report the real figure
            fresh = self.available(product_id, size)
            if not fresh.ok:
                return fresh
            outcome = InsufficientStock(product_id, size, fresh.stock, quantity)
            logger.info("Reservation rejected by store: %s", outcome)
            return outcome
        raise exc

    def _sync_cache(self, product_id: int, size: str, delta: int, after: ProductInventory) -> None:
        expected = after.size_inventory.get(size)
        try:
            adjusted = self.cache.adjust(product_id, size, delta)
            snapshot = self.cache.get(product_id)
        except Exception:
            logger.exception("Inventory cache update failed for product %s; invalidating", product_id)
            self.cache.invalidate(product_id)
            return

        stale = adjusted is not None and adjusted != expected
        if snapshot is not NOT_FOUND and (
            snapshot.size_inventory.get(size) != expected or snapshot.total_stock != after.total_stock
        ):
            stale = True
        if stale:
            logger.warning(
                "Inventory cache disagreed with the store for product %s size %s; invalidating",
                product_id, size,
            )
            self.cache.invalidate(product_id)
