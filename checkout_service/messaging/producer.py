import json

import pika

from ..config import EVENTS_EXCHANGE, RABBITMQ_HOST
from ..log import get_logger

logger = get_logger("messaging")


class RabbitMQProducer:
    """
    Publishes events to the topic exchange.

    Connects lazily and gives up after ``connection_attempts`` so a caller inside
    a request is never held hostage by a broker that is down.
    """

    def __init__(self, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE, exchange_type="topic",
                 connection_attempts=2, socket_timeout=5):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.connection_attempts = connection_attempts
        self.socket_timeout = socket_timeout
        self.connection = None
        self.channel = None

    def connect(self):
        parameters = pika.ConnectionParameters(
            host=self.host,
            connection_attempts=self.connection_attempts,
            retry_delay=1,
            socket_timeout=self.socket_timeout,
            blocked_connection_timeout=self.socket_timeout,
        )
        self.connection = pika.BlockingConnection(parameters)
        self.channel = self.connection.channel()
        # Durable so the exchange survives broker restarts.
        self.channel.exchange_declare(
            exchange=self.exchange_name,
            exchange_type=self.exchange_type,
            durable=True,
        )
        logger.info("rabbitmq_connected", host=self.host, exchange=self.exchange_name)

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.finalized', 'order.shipping_updated').
            message (dict): The data payload to send.
        """
        if not self.connection or self.connection.is_closed:
            self.connect()

        self.channel.basic_publish(
            exchange=self.exchange_name,
            routing_key=routing_key,
            body=json.dumps(message, default=str),
            properties=pika.BasicProperties(
                delivery_mode=2,  # Make message persistent
                content_type="application/json",
            ),
        )
        logger.info("event_published", routing_key=routing_key)

    def close(self):
        """Closes the connection cleanly."""
        if self.connection and not self.connection.is_closed:
            self.connection.close()
