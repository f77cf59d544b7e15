"""Fire-and-forget order notifications.

The state change that triggers a notification is always committed first; a
broker outage is logged here and never reaches the caller. Inside a request
the publish is handed to ``schedule`` (FastAPI's ``BackgroundTasks.add_task``)
so it runs after the response has been sent.
"""

from .log import get_logger

logger = get_logger("notifications")


class Notifier:
    def __init__(self, publisher_factory, schedule=None):
        # Called per event so each publish gets a fresh broker connection.
        self.publisher_factory = publisher_factory
        self.schedule = schedule

    def _send(self, routing_key, payload):
        # Payload is built from the ORM row now; the row may be detached later.
        if self.schedule is not None:
            self.schedule(self._publish, routing_key, payload)
        else:
            self._publish(routing_key, payload)

    def _publish(self, routing_key, payload):
        publisher = None
        try:
            publisher = self.publisher_factory()
            publisher.publish(routing_key, payload)
        except Exception as e:
            logger.warning("notification_failed", routing_key=routing_key, error=str(e))
        finally:
            if publisher is not None:
                try:
                    publisher.close()
                except Exception as e:
                    logger.warning("notification_close_failed", routing_key=routing_key, error=str(e))

    def notify_order_finalized(self, order):
        self._send(
            "order.finalized",
            {
                "order_id": order.id,
                "user_id": order.user_id,
                "total_price": str(order.total_price),
                "currency": order.currency,
                "email": (order.shipping_address or {}).get("email"),
            },
        )

    def notify_shipping_update(self, order, carrier, tracking_number):
        self._send(
            "order.shipping_updated",
            {
                "order_id": order.id,
                "user_id": order.user_id,
                "shipping_company": carrier,
                "tracking_number": tracking_number,
                "email": (order.shipping_address or {}).get("email"),
            },
        )
