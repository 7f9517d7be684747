import logging

import aio_pika

from .events import build_event, to_json
from .models import CANCELLED_TIMEOUT, COMPLETED, Booking, RatingRecord

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "domain_events"

TIMEOUT_MESSAGE = "Provider did not arrive in time: no-show, fully refunded"

STATUS_MESSAGES = {
    "awaiting_acceptance": "Payment held in escrow, waiting for the provider to accept",
    "confirmed": "Provider accepted the booking",
    "completed": "Service completed, payment released to the provider",
    CANCELLED_TIMEOUT: TIMEOUT_MESSAGE,
    "cancelled_manual": "Booking cancelled",
}


class RabbitPublisher:
    def __init__(self, rabbit_url: str | None):
        self.rabbit_url = rabbit_url
        self.enabled = bool(rabbit_url)
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.rabbit_url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                EXCHANGE_NAME,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            logger.warning("rabbitmq_connect_failed: %s", e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.warning("rabbitmq_publish_failed", extra={"routing_key": routing_key, "error": str(e)})

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None


class NotificationDispatcher:
    """
    Turns engine outcomes into domain events for the email/push workers.

    Delivery is best effort: a broker outage is logged by the publisher and
    never fails the transition that triggered it.
    """

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def booking_transitioned(self, booking: Booking, event: str):
        routing_key = f"booking.{booking.status}"
        data = {
            "booking_id": booking.booking_id,
            "event": event,
            "status": booking.status,
            "customer_id": booking.customer_id,
            "provider_id": booking.provider_id,
            "message": STATUS_MESSAGES.get(booking.status),
        }
        if booking.status == COMPLETED:
            data["rating_open"] = True
        await self.publisher.publish(routing_key, to_json(build_event(routing_key, data)))

    async def rating_submitted(self, record: RatingRecord):
        data = {
            "booking_id": record.booking_id,
            "rater_role": record.rater_role,
            "ratee_id": record.ratee_id,
            "score": record.score,
        }
        await self.publisher.publish("rating.submitted", to_json(build_event("rating.submitted", data)))
