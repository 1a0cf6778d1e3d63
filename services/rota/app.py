# ============================================================
# app.py — Entry point of the rota service
# ------------------------------------------------------------
# Builds the FastAPI application:
#   - creates the tables at startup
#   - when ROTA_BROKER=1, relays local change events to RabbitMQ
#     and starts a consumer thread for events of other processes
#   - mounts the REST routes
# ============================================================
import logging

import uvicorn
from fastapi import FastAPI
from sqlmodel import Session, SQLModel

from rota import config
from rota import models  # noqa: F401  (registers the tables)
from rota.api import router
from rota.consumer import start_consumer_thread
from rota.feed import ALL_TABLES, ChangeFeed
from rota.publisher import BrokerRelay
from rota.repository import ScheduleRepository

config.configure_logging()
log = logging.getLogger(__name__)

app = FastAPI(title="Rota Service")
app.state.feed = ChangeFeed()


@app.on_event("startup")
def start():
    engine = config.get_engine()
    SQLModel.metadata.create_all(engine)
    with Session(engine) as s:
        blocks = ScheduleRepository(s).count()
    if config.BOOTSTRAP_OPEN and blocks == 0:
        log.warning("bootstrap mode: no schedule block exists, any holder may check in without a limit")
    elif config.BOOTSTRAP_OPEN:
        log.info("bootstrap access enabled, inactive while %s schedule blocks exist", blocks)
    if config.BROKER_ENABLED:
        app.state.feed.subscribe(ALL_TABLES, BrokerRelay())
        start_consumer_thread(app.state.feed)


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(router)


def main():
    uvicorn.run("rota.app:app", host="0.0.0.0", port=8000)
