import logging
import threading

from fastapi import FastAPI

from provisioner.api import router
from provisioner.config import get_settings
from provisioner.db import init_db
from provisioner.logging_config import configure_logging
from provisioner.loops import start_loops
from provisioner.runtime import get_runtime


logger = logging.getLogger(__name__)
stop_event = threading.Event()
loop_threads: list[threading.Thread] = []


app = FastAPI(title="Cloud Worker Provisioner")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    init_db()

    if not settings.disable_background_loops:
        global loop_threads
        loop_threads = start_loops(stop_event, get_runtime())
    logger.info("provisioner startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    stop_event.set()
    for thread in loop_threads:
        thread.join(timeout=1)
    if get_runtime.cache_info().currsize:
        get_runtime().shutdown()
