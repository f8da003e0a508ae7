import threading

import pytest
from sqlalchemy.exc import OperationalError

from app import crud
from app.inventory_cache import NOT_FOUND
from app.models import Product
from app.reservations import (
    AlreadyReleased,
    InsufficientStock,
    InvalidSize,
    LinesReserved,
    Ok,
    ProductNotFound,
    ReservationService,
    StockLine,
    TransientStoreFailure,
)


def test_reserve_then_read_and_out_of_stock(make_product, reservations, read_stock):
    p1 = make_product(sizes=["S", "M"], size_inventory={"S": 3, "M": 0})

    assert reservations.reserve(p1.id, "S", 2) == Ok(1)
    assert reservations.available(p1.id, "S") == Ok(1)
    assert reservations.reserve(p1.id, "M", 1) == InsufficientStock(p1.id, "M", 0, 1)
    assert read_stock(p1.id) == (1, {"S": 1, "M": 0})


def test_request_above_stock_is_rejected_without_writing(make_product, reservations, read_stock):
    product = make_product(sizes=["S"], size_inventory={"S": 3})
    assert reservations.reserve(product.id, "S", 4) == InsufficientStock(product.id, "S", 3, 4)
    assert read_stock(product.id) == (3, {"S": 3})


def test_unknown_product_and_size(make_product, reservations):
    product = make_product(sizes=["S"], size_inventory={"S": 3})
    assert reservations.reserve(9999, "S", 1) == ProductNotFound(9999)
    assert reservations.reserve(product.id, "XL", 1) == InvalidSize(product.id, "XL")
    assert reservations.available(product.id, "XL") == InvalidSize(product.id, "XL")


def test_quantity_must_be_positive(make_product, reservations):
    product = make_product(sizes=["S"], size_inventory={"S": 3})
    with pytest.raises(ValueError):
        reservations.reserve(product.id, "S", 0)
    with pytest.raises(ValueError):
        reservations.release(product.id, "S", -1)


def test_round_trip_restores_store_and_cache(make_product, reservations, cache, read_stock):
    product = make_product(sizes=["S", "M"], size_inventory={"S": 5, "M": 2})
    assert reservations.available(product.id, "S") == Ok(5)
    before = read_stock(product.id)

    assert reservations.reserve(product.id, "S", 3) == Ok(2)
    assert cache.get(product.id, "S") == 2
    assert reservations.release(product.id, "S", 3) == Ok(5)

    assert read_stock(product.id) == before
    assert cache.get(product.id, "S") == 5
    assert cache.get(product.id).total_stock == 7


def test_cache_agrees_with_store_after_mutations(make_product, reservations, cache, read_stock):
    product = make_product(sizes=["S", "M", "L"], size_inventory={"S": 4, "M": 4, "L": 4})
    reservations.reserve(product.id, "M", 1)
    reservations.reserve(product.id, "M", 2)
    reservations.release(product.id, "L", 3)

    total, stored = read_stock(product.id)
    for size in ("M", "L"):
        cached = cache.get(product.id, size)
        assert cached is NOT_FOUND or cached == stored[size]
        assert reservations.available(product.id, size) == Ok(stored[size])
    assert stored == {"S": 4, "M": 1, "L": 7}
    assert total == sum(stored.values())


def test_first_write_materializes_fallback_sizes(make_product, reservations, read_stock):
    product = make_product(sizes=["S", "M", "L"], stock=10)
    assert reservations.available(product.id, "S") == Ok(3)

    assert reservations.reserve(product.id, "S", 2) == Ok(2)

    # the unassigned stock is spread remainder first, so nothing is lost
    assert read_stock(product.id) == (8, {"S": 2, "M": 3, "L": 3})
    assert reservations.available(product.id, "M") == Ok(3)


def test_round_trip_on_fallback_product_keeps_total(make_product, reservations, read_stock):
    product = make_product(sizes=["S", "M", "L"], stock=10)

    assert reservations.reserve(product.id, "S", 2).ok
    assert reservations.release(product.id, "S", 2).ok

    assert read_stock(product.id) == (10, {"S": 4, "M": 3, "L": 3})


def test_totals_hold_after_every_mutation(make_product, reservations, read_stock):
    product = make_product(sizes=["S", "M"], stock=9, size_inventory={"S": 4})
    steps = [
        (reservations.reserve, "M", 2),
        (reservations.release, "S", 1),
        (reservations.reserve, "S", 5),
        (reservations.release, "M", 2),
    ]
    for op, size, quantity in steps:
        assert op(product.id, size, quantity).ok
        total, stored = read_stock(product.id)
        assert total == sum(stored.values())


def test_stale_cache_reports_the_store_figure(make_product, reservations, cache, read_stock):
    product = make_product(sizes=["S", "M"], size_inventory={"S": 2, "M": 0})
    cache.set(product.id, "S", 10)

    assert reservations.reserve(product.id, "S", 5) == InsufficientStock(product.id, "S", 2, 5)
    assert read_stock(product.id) == (2, {"S": 2, "M": 0})
    assert cache.get(product.id, "S") == 2


def test_stale_cache_is_dropped_after_a_write(make_product, reservations, cache, read_stock):
    product = make_product(sizes=["S"], size_inventory={"S": 6})
    cache.set(product.id, "S", 10)

    assert reservations.reserve(product.id, "S", 5) == Ok(1)
    assert cache.get(product.id, "S") is NOT_FOUND
    assert reservations.available(product.id, "S") == Ok(1)


def test_release_for_deleted_product(make_product, reservations, db, cache):
    product = make_product(sizes=["S"], size_inventory={"S": 1})
    product_id = product.id
    reservations.available(product_id, "S")
    db.delete(product)
    db.commit()

    assert reservations.release(product_id, "S", 1) == ProductNotFound(product_id)
    assert cache.get(product_id, "S") is NOT_FOUND


def test_failed_line_rolls_back_earlier_lines(make_product, reservations, read_stock):
    a = make_product(sizes=["M", "L"], size_inventory={"M": 4, "L": 4})
    b = make_product(sizes=["M", "L"], size_inventory={"M": 0, "L": 5})

    outcome = reservations.reserve_lines([StockLine(a.id, "M", 2), StockLine(b.id, "L", 100)])

    assert outcome == InsufficientStock(b.id, "L", 5, 100)
    assert read_stock(a.id) == (8, {"M": 4, "L": 4})
    assert read_stock(b.id) == (5, {"M": 0, "L": 5})


def test_all_lines_reserved(make_product, reservations, read_stock):
    a = make_product(sizes=["M"], size_inventory={"M": 4})
    b = make_product(sizes=["L"], size_inventory={"L": 5})

    outcome = reservations.reserve_lines([StockLine(a.id, "M", 1), StockLine(b.id, "L", 5)])

    assert outcome == LinesReserved((3, 0))
    outcomes = reservations.release_lines([StockLine(a.id, "M", 1), StockLine(b.id, "L", 5)])
    assert outcomes == [Ok(4), Ok(5)]


def test_store_outage_raises_transient_failure(make_product, reservations, read_stock, monkeypatch):
    product = make_product(sizes=["S"], size_inventory={"S": 3})

    def unavailable(*args, **kwargs):
        raise OperationalError("UPDATE product_sizes", {}, Exception("database is locked"))

    monkeypatch.setattr(crud, "apply_size_delta", unavailable)
    with pytest.raises(TransientStoreFailure):
        reservations.reserve(product.id, "S", 1)
    monkeypatch.undo()
    assert read_stock(product.id) == (3, {"S": 3})


def test_outage_mid_order_undoes_reserved_lines(make_product, reservations, read_stock, monkeypatch):
    a = make_product(sizes=["M"], size_inventory={"M": 4})
    b = make_product(sizes=["M"], size_inventory={"M": 4})
    real = crud.apply_size_delta

    def flaky(db, product_id, size, delta):
        if product_id == b.id:
            raise OperationalError("UPDATE product_sizes", {}, Exception("timeout"))
        return real(db, product_id, size, delta)

    monkeypatch.setattr(crud, "apply_size_delta", flaky)
    with pytest.raises(TransientStoreFailure):
        reservations.reserve_lines([StockLine(a.id, "M", 2), StockLine(b.id, "M", 1)])
    assert read_stock(a.id) == (4, {"M": 4})


def test_concurrent_reservations_never_oversell(make_product, session_factory, cache, read_stock):
    product = make_product(sizes=["M", "L"], size_inventory={"M": 5, "L": 1})
    barrier = threading.Barrier(8)
    outcomes, errors = [], []
    lock = threading.Lock()

    def buyer():
        session = session_factory()
        try:
            service = ReservationService(session, cache)
            barrier.wait()
            outcome = service.reserve(product.id, "M", 1)
            with lock:
                outcomes.append(outcome)
        except Exception as exc:
            with lock:
                errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=buyer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(1 for o in outcomes if o.ok) == 5
    assert all(isinstance(o, InsufficientStock) for o in outcomes if not o.ok)
    assert read_stock(product.id) == (1, {"M": 0, "L": 1})


def test_available_survives_a_broken_cache(make_product, db, read_stock):
    product = make_product(sizes=["S"], size_inventory={"S": 3})

    class BrokenCache:
        def get(self, *args, **kwargs):
            raise RuntimeError("cache down")

    assert ReservationService(db, BrokenCache()).available(product.id, "S") == Ok(3)
    assert db.get(Product, product.id).stock == 3


def test_order_line_is_released_only_once(db, make_product, reservations, read_stock):
    product = make_product(sizes=["M"], size_inventory={"M": 4})
    assert reservations.reserve(product.id, "M", 3) == Ok(1)
    order = crud.create_order(
        db,
        user_id=1,
        items_data=[{"product_id": product.id, "product_name": "Tee", "size": "M", "quantity": 3, "price": 20}],
    )
    line = StockLine(product.id, "M", 3, order.items[0].id)

    assert reservations.release_lines([line]) == [Ok(4)]
    assert reservations.release_lines([line]) == [AlreadyReleased(line.item_id)]
    assert read_stock(product.id) == (4, {"M": 4})


def test_failed_order_line_release_can_be_retried(db, make_product, reservations, read_stock, monkeypatch):
    product = make_product(sizes=["M"], size_inventory={"M": 4})
    reservations.reserve(product.id, "M", 2)
    order = crud.create_order(
        db,
        user_id=1,
        items_data=[{"product_id": product.id, "product_name": "Tee", "size": "M", "quantity": 2, "price": 20}],
    )
    line = StockLine(product.id, "M", 2, order.items[0].id)
    real = crud._apply_size_delta

    def unavailable(*args, **kwargs):
        raise OperationalError("UPDATE product_sizes", {}, Exception("timeout"))

    monkeypatch.setattr(crud, "_apply_size_delta", unavailable)
    with pytest.raises(TransientStoreFailure):
        reservations.release_order_line(line)
    monkeypatch.setattr(crud, "_apply_size_delta", real)

    assert reservations.release_order_line(line) == Ok(4)
    assert reservations.release_order_line(line) == AlreadyReleased(line.item_id)
    assert read_stock(product.id) == (4, {"M": 4})


def test_read_racing_a_write_does_not_cache_the_old_figure(
    make_product, reservations, session_factory, cache, monkeypatch, read_stock
):
    product = make_product(sizes=["S"], size_inventory={"S": 5})
    real = crud.load_inventory
    raced = []

    def load_then_sell(db, product_id):
        inventory = real(db, product_id)
        if not raced:
            raced.append(product_id)
            other = session_factory()
            try:
                assert ReservationService(other, cache).reserve(product_id, "S", 2) == Ok(3)
            finally:
                other.close()
        return inventory

    monkeypatch.setattr(crud, "load_inventory", load_then_sell)

    # the first read saw 5, but the sale that finished meanwhile must win in the cache
    assert reservations.available(product.id, "S") == Ok(5)
    assert cache.get(product.id, "S") == 3
    assert read_stock(product.id) == (3, {"S": 3})
