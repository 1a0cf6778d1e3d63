# ============================================================
# consumer.py — RabbitMQ consumer for the change feed
# ------------------------------------------------------------
# Listens on the fanout exchange "events" and hands every
# RowChanged message to the local ChangeFeed, so observers in
# this process re-read after mutations made by other processes.
# Messages are only triggers: nothing here writes to the store.
# ============================================================
import json
import logging
import threading

import pika
from pika.exceptions import AMQPError

from rota.config import EXCHANGE, RABBIT_HOST
from rota.feed import BROKER, ChangeEvent, ChangeFeed
from rota.publisher import EVENT_TYPE

log = logging.getLogger(__name__)


# Builds the callback run for each message received.
def make_handler(feed: ChangeFeed):
    def on_message(ch, method, properties, body):
        try:
            msg = json.loads(body)
        except (TypeError, ValueError) as e:
            log.warning("bad payload: %s", e)
            return
        if not isinstance(msg, dict) or msg.get("type") != EVENT_TYPE:
            return
        try:
            event = ChangeEvent.from_payload(msg.get("payload") or {}, origin=BROKER)
        except ValueError as e:
            log.warning("dropping message: %s", e)
            return
        log.debug("received %s/%s", event.table, event.operation)
        feed.publish(event)

    return on_message


# Connect + consume loop, retrying with a growing delay while the
# broker is unreachable. Runs until `stop` is set.
def start_consumer(feed: ChangeFeed, host: str = RABBIT_HOST, exchange: str = EXCHANGE, stop: threading.Event = None):
    stop = stop or threading.Event()
    on_message = make_handler(feed)
    attempt = 0
    while not stop.is_set():
        try:
            log.info("connecting to rabbitmq at %s...", host)
            conn = pika.BlockingConnection(pika.ConnectionParameters(host=host, heartbeat=60))
            ch = conn.channel()
            ch.exchange_declare(exchange=exchange, exchange_type="fanout", durable=True)
            # anonymous queue, exclusive to this process
            q = ch.queue_declare(queue="", exclusive=True).method.queue
            ch.queue_bind(exchange=exchange, queue=q)
            log.info("bound to exchange '%s' queue='%s'", exchange, q)
            attempt = 0
            ch.basic_consume(queue=q, on_message_callback=on_message, auto_ack=True)
            ch.start_consuming()
        except AMQPError as e:
            attempt += 1
            wait = min(5 * attempt, 30)
            log.error("connection error: %s, retrying in %ss", e, wait)
            stop.wait(wait)
        except Exception:
            attempt += 1
            wait = min(5 * attempt, 30)
            log.exception("consumer stopped unexpectedly, restarting in %ss", wait)
            stop.wait(wait)


def start_consumer_thread(feed: ChangeFeed, **kwargs) -> threading.Thread:
    t = threading.Thread(target=start_consumer, args=(feed,), kwargs=kwargs, daemon=True, name="rota-consumer")
    t.start()
    return t
