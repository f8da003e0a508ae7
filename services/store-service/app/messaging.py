from __future__ import annotations

import datetime as dt
import json
import logging

import pika
from pika.exceptions import AMQPError

from .config import EVENTS_ENABLED, EVENTS_EXCHANGE, RABBITMQ_URL

logger = logging.getLogger(__name__)


def _connect() -> pika.BlockingConnection:
    params = pika.URLParameters(RABBITMQ_URL)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    return pika.BlockingConnection(params)


def publish_event(routing_key: str, payload: dict) -> None:
    connection = _connect()
    try:
        ch = connection.channel()
        ch.exchange_declare(exchange=EVENTS_EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        ch.basic_publish(
            exchange=EVENTS_EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()


def emit_order_event(event: str, order) -> bool:
    """Publish an ``order.*`` event when events are enabled.

    Returns False when disabled or when the broker could not be reached; the
    order itself is already committed at this point.
    """
    if not EVENTS_ENABLED:
        return False
    payload = {
        "event": event,
        "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        "order_id": order.id,
        "user_id": order.user_id,
        "total_amount": float(order.total_amount),
        "items": [
            {"product_id": i.product_id, "size": i.size, "quantity": i.quantity}
            for i in order.items
        ],
    }
    try:
        publish_event(event, payload)
    except (AMQPError, OSError):
        logger.exception("Failed to publish %s for order %s", event, order.id)
        return False
    return True
