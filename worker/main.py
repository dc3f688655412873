"""Module entrypoint for running the worker."""

from __future__ import annotations

import logging
import signal
from types import FrameType

from .worker import Worker

LOGGER = logging.getLogger("reelsmith.worker")


def main() -> None:
    worker = Worker()

    def _handle_signal(signum: int, _frame: FrameType | None) -> None:
        LOGGER.info("received signal %s, finishing current job", signum)
        worker.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    worker.run_forever()


if __name__ == "__main__":
    main()
