"""Per-size stock arithmetic.

Two different splits of an aggregate stock count live here and are kept
apart on purpose:

* ``resolve_available_stock`` is the read-time view. A size without an
  explicit count gets ``floor(total / len(sizes))``; the remainder is not
  handed out.
* ``distribute_stock`` is used when per-size counts are written (admin
  create/edit, repair script). It hands the remainder out one unit at a
  time to the first sizes in declared order.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ProductInventory:
    """The stock-related fields of a product record."""

    product_id: int
    total_stock: int
    sizes: List[str] = field(default_factory=list)
    size_inventory: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_product(cls, product) -> "ProductInventory":
        return cls(
            product_id=product.id,
            total_stock=int(product.stock or 0),
            sizes=list(product.sizes or []),
            size_inventory=dict(product.size_inventory),
        )

    def is_fully_populated(self) -> bool:
        return all(self.size_inventory.get(s) is not None for s in self.sizes)


def _coerce_stock(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return count if count > 0 else 0


def resolve_available_stock(product: ProductInventory, size: str) -> int:
    inventory = product.size_inventory or {}
    if inventory.get(size) is not None:
        return _coerce_stock(inventory[size])

    sizes = product.sizes or []
    total = _coerce_stock(product.total_stock)
    if total > 0 and size in sizes:
        return total // len(sizes)
    return 0


def distribute_stock(total_stock: int, sizes: List[str]) -> Dict[str, int]:
    """Split ``total_stock`` across ``sizes``, remainder to the first sizes.

    >>> distribute_stock(10, ["S", "M", "L"])
    {'S': 4, 'M': 3, 'L': 3}
    """
    if not sizes:
        return {}
    total = _coerce_stock(total_stock)
    base, remainder = divmod(total, len(sizes))
    result: Dict[str, int] = {}
    for size in sizes:
        extra = 1 if remainder > 0 else 0
        result[size] = base + extra
        if remainder > 0:
            remainder -= 1
    return result


def complete_size_inventory(
    total_stock: int, sizes: List[str], size_inventory: Optional[Dict[str, Any]] = None
) -> Dict[str, int]:
    """Fill the sizes missing from ``size_inventory`` from the stock not yet assigned.

    Explicit counts are kept (coerced); the stock they leave over is handed
    to the missing sizes with :func:`distribute_stock`.
    """
    explicit = {
        s: _coerce_stock(v)
        for s, v in (size_inventory or {}).items()
        if s in sizes and v is not None
    }
    missing = [s for s in sizes if s not in explicit]
    leftover = max(0, _coerce_stock(total_stock) - sum(explicit.values()))
    filled = distribute_stock(leftover, missing)
    return {s: explicit[s] if s in explicit else filled[s] for s in sizes}
