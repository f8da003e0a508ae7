"""Clear the inventory cache of a running store-service.

Usage:
    store-cache-clear                           # everything
    store-cache-clear --product 12              # one product, all sizes
    store-cache-clear --product 12 --size M     # one product size
"""
import argparse
import logging
import sys

import requests

from ..config import ADMIN_TOKEN, STORE_SERVICE_URL

logger = logging.getLogger(__name__)


def clear_cache(base_url: str, token: str, product_id=None, size=None, timeout: float = 5) -> dict:
    params = {}
    if product_id is not None:
        params["product_id"] = product_id
    if size:
        params["size"] = size
    response = requests.delete(
        f"{base_url.rstrip('/')}/inventory/cache",
        params=params,
        headers={"Authorization": f"Bearer {token}"},
        timeout=timeout,
    )
    response.raise_for_status()
    return response.json()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Clear the store-service inventory cache")
    parser.add_argument("--product", type=int, help="product id to clear")
    parser.add_argument("--size", help="size to clear (requires --product)")
    parser.add_argument("--url", default=STORE_SERVICE_URL, help="store-service base URL")
    parser.add_argument("--token", default=ADMIN_TOKEN, help="admin bearer token")
    args = parser.parse_args(argv)

    if args.size and args.product is None:
        parser.error("--size requires --product")

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        result = clear_cache(args.url, args.token, args.product, args.size)
    except requests.exceptions.RequestException as e:
        logger.error("Could not clear inventory cache: %s", e)
        return 1

    if args.product is None:
        logger.info("All inventory cache cleared (%d entries)", result["cleared"])
    elif args.size:
        logger.info("Cache cleared for product %s, size %s", args.product, args.size)
    else:
        logger.info("Cache cleared for product %s (%d entries)", args.product, result["cleared"])
    logger.info("Inventory data will be refreshed on next request.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
