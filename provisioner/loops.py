import logging
import threading

from provisioner.runtime import Runtime
from provisioner.services.reaper import reap_once


logger = logging.getLogger(__name__)


def start_loops(stop_event: threading.Event, runtime: Runtime) -> list[threading.Thread]:
    interval = runtime.settings.reaper_interval_sec

    def reaper_worker() -> None:
        while not stop_event.is_set():
            try:
                terminated = reap_once(
                    runtime.orchestrator, runtime.registry, runtime.channels
                )
                if terminated:
                    logger.info("reaper terminated %s", ", ".join(terminated))
            except Exception as exc:  # noqa: BLE001
                logger.exception("reaper tick failed: %s", exc)
            stop_event.wait(interval)

    thread = threading.Thread(target=reaper_worker, name="reaper-worker", daemon=True)
    thread.start()
    return [thread]
