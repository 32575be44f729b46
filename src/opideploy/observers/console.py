# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/observers/console.py
from .events import BaseEvent

_HIDDEN = ("ts", "run_id", "env", "context")


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        where = d["context"] or d["env"]
        print(f"[{d['ts']}] {k} [{where}] "
              + " ".join(f"{x}={y}" for x, y in d.items() if x not in _HIDDEN and x != "stderr"))
