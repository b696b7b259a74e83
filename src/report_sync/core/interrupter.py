"""Cooperative cancellation token for sync runs."""

from __future__ import annotations

import logging
import threading


logger = logging.getLogger(__name__)


class SyncInterrupter:
    """
    Sticky interruption flag shared by the components of one sync run.

    Long loops check ``is_interrupted`` before every unit of work and return
    what they have accumulated so far once it is set. Interruption is not an
    error.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def interrupt(self) -> None:
        if not self._event.is_set():
            logger.info("Sync interruption requested")
        self._event.set()

    @property
    def is_interrupted(self) -> bool:
        return self._event.is_set()
