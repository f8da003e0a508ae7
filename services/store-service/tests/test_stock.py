import pytest

from app.stock import (
    ProductInventory,
    complete_size_inventory,
    distribute_stock,
    resolve_available_stock,
)


def inventory(total, sizes, size_inventory=None):
    return ProductInventory(product_id=1, total_stock=total, sizes=list(sizes), size_inventory=size_inventory or {})


def test_explicit_counts_are_used_as_is():
    product = inventory(9, ["S", "M", "L"], {"S": 2, "M": 0, "L": 7})
    assert [resolve_available_stock(product, s) for s in product.sizes] == [2, 0, 7]
    assert product.is_fully_populated()


def test_missing_counts_fall_back_to_even_floor_split():
    product = inventory(10, ["S", "M", "L"])
    assert [resolve_available_stock(product, s) for s in product.sizes] == [3, 3, 3]
    assert not product.is_fully_populated()


def test_partial_counts_mix_explicit_and_fallback():
    product = inventory(12, ["S", "M", "L"], {"S": 1})
    assert resolve_available_stock(product, "S") == 1
    assert resolve_available_stock(product, "M") == 4


@pytest.mark.parametrize("total, sizes, size", [
    (10, [], "M"),
    (0, ["S", "M"], "S"),
    (10, ["S", "M"], "XL"),
    (-5, ["S", "M"], "S"),
])
def test_resolves_to_zero(total, sizes, size):
    assert resolve_available_stock(inventory(total, sizes), size) == 0


@pytest.mark.parametrize("raw", [-3, "lots", [1]])
def test_unusable_explicit_counts_are_zero(raw):
    product = inventory(30, ["S", "M"], {"S": raw})
    assert resolve_available_stock(product, "S") == 0


def test_none_entry_counts_as_missing():
    product = inventory(10, ["S", "M"], {"S": None})
    assert resolve_available_stock(product, "S") == 5


def test_distribute_gives_remainder_to_first_sizes():
    assert distribute_stock(10, ["S", "M", "L"]) == {"S": 4, "M": 3, "L": 3}
    assert distribute_stock(11, ["S", "M", "L"]) == {"S": 4, "M": 4, "L": 3}
    assert distribute_stock(2, ["S", "M", "L"]) == {"S": 1, "M": 1, "L": 0}
    assert distribute_stock(5, []) == {}


def test_distribute_preserves_total():
    for total in range(0, 25):
        assert sum(distribute_stock(total, ["XS", "S", "M", "L", "XL"]).values()) == total


def test_complete_fills_missing_sizes_from_unassigned_stock():
    assert complete_size_inventory(10, ["S", "M", "L"], {"S": 2}) == {"S": 2, "M": 4, "L": 4}


def test_complete_drops_undeclared_sizes_and_never_goes_negative():
    counts = complete_size_inventory(3, ["S", "M"], {"S": 5, "XXL": 9})
    assert counts == {"S": 5, "M": 0}


def test_complete_with_nothing_explicit_matches_distribute():
    assert complete_size_inventory(10, ["S", "M", "L"]) == distribute_stock(10, ["S", "M", "L"])
