# ============================================================
# publisher.py — RabbitMQ relay for the change feed
# ------------------------------------------------------------
# Other processes of the service (and any other observer) learn
# about a mutation through the fanout exchange "events". Every
# locally emitted ChangeEvent is published there as
#   {"type": "RowChanged", "payload": {table, operation, row}}
# A broker outage only means observers re-read later: errors are
# logged and never reach the caller.
# ============================================================
import json
import logging

import pika
from pika.exceptions import AMQPError

from rota.config import EXCHANGE, RABBIT_HOST
from rota.feed import LOCAL, ChangeEvent

log = logging.getLogger(__name__)

EVENT_TYPE = "RowChanged"


# Publishes one message on the fanout exchange. All queues bound to
# it receive a copy.
def publish_event(event_type: str, payload: dict, host: str = RABBIT_HOST, exchange: str = EXCHANGE):
    conn = pika.BlockingConnection(pika.ConnectionParameters(host=host))
    try:
        ch = conn.channel()
        # durable=True to survive broker restarts
        ch.exchange_declare(exchange=exchange, exchange_type="fanout", durable=True)
        message = {"type": event_type, "payload": payload}
        ch.basic_publish(exchange=exchange, routing_key="", body=json.dumps(message))
    finally:
        conn.close()
    log.debug("published %s %s", event_type, payload)


class BrokerRelay:
    """ChangeFeed subscriber forwarding local events to the broker."""

    def __init__(self, host: str = RABBIT_HOST, exchange: str = EXCHANGE, publish=publish_event):
        self.host = host
        self.exchange = exchange
        self._publish = publish

    def __call__(self, event: ChangeEvent):
        # events that came from the broker are not sent back to it
        if event.origin != LOCAL:
            return
        try:
            self._publish(EVENT_TYPE, event.to_payload(), host=self.host, exchange=self.exchange)
        except (AMQPError, OSError) as e:
            log.warning("could not relay %s/%s to %s: %s", event.table, event.operation, self.host, e)
