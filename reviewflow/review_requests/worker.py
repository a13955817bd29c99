# reviewflow/review_requests/worker.py
"""
Bucle de polling para despliegues sin cron externo:
  python -m reviewflow.review_requests.worker

Cada DISPATCH_POLL_SECONDS ejecuta un tick del dispatcher y, cada
RECOVERY_INTERVAL_SECONDS, un barrido de recuperación. Se pueden levantar varias
réplicas: la exclusión la dan los updates condicionales.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from reviewflow.config import Settings, settings, setup_logging
from reviewflow.db import Base, SessionLocal, engine

from .dispatcher import Dispatcher, default_adapters
from .recovery import RecoverySweep

logger = logging.getLogger(__name__)


def run_forever(cfg: Optional[Settings] = None, *, max_loops: Optional[int] = None) -> None:
    cfg = cfg or settings
    adapters = default_adapters(cfg)
    dispatcher = Dispatcher(SessionLocal, adapters, cfg)
    sweep = RecoverySweep(SessionLocal, adapters, cfg)

    logger.info(
        "[worker] started poll=%ss recovery_every=%ss workers=%s",
        cfg.DISPATCH_POLL_SECONDS, cfg.RECOVERY_INTERVAL_SECONDS, cfg.DISPATCH_WORKERS,
    )

    last_recovery = 0.0
    loops = 0
    while max_loops is None or loops < max_loops:
        loops += 1
        try:
            result = dispatcher.tick()
            if result.processed:
                logger.info("[worker] dispatched %s", result.as_dict())
        except Exception:
            logger.exception("[worker] dispatcher tick failed")

        if time.monotonic() - last_recovery >= cfg.RECOVERY_INTERVAL_SECONDS:
            try:
                sweep.run()
            except Exception:
                logger.exception("[worker] recovery sweep failed")
            last_recovery = time.monotonic()

        time.sleep(cfg.DISPATCH_POLL_SECONDS)


def main():
    setup_logging()
    Base.metadata.create_all(bind=engine)
    try:
        run_forever()
    except KeyboardInterrupt:
        logger.info("[worker] stopped")


if __name__ == "__main__":
    main()
