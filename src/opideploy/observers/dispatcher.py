# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/observers/dispatcher.py
from __future__ import annotations
import logging
import threading
from typing import List, Optional
from .events import BaseEvent
from .interface import Observer

log = logging.getLogger("opideploy")


class EventBus:
    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = observers or []
        self._lock = threading.Lock()

    def emit(self, event: BaseEvent) -> None:
        # instances emit from worker threads
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception:
                    log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)
