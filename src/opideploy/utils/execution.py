# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass

@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how tasks are executed

    dry_run: log each task that would run, touch no host and record nothing
    """

    dry_run: bool = False
