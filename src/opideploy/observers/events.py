# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    env: str          # run name
    context: Optional[str]  # instance name, None for run-wide events

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_ctx(env: str, context: Optional[str] = None, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": _now(),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


def scoped(ctx: Dict[str, Any], context: Optional[str]) -> Dict[str, Any]:
    """Same run, new timestamp, narrowed to one instance."""
    return {**ctx, "ts": _now(), "context": context}


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TaskStarted(BaseEvent):
    task_id: str
    kind: str

@dataclass(frozen=True)
class TaskSkipped(BaseEvent):
    task_id: str
    reason: str       # "unchanged" | "dry-run"

@dataclass(frozen=True)
class TaskSucceeded(BaseEvent):
    task_id: str
    duration_ms: int

@dataclass(frozen=True)
class TaskFailed(BaseEvent):
    task_id: str
    error: str
    stderr: str = ""

@dataclass(frozen=True)
class TaskBlocked(BaseEvent):
    task_id: str
    blocked_by: str


# ---------------------------------------------------------------------
# Instance & Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class InstanceFinished(BaseEvent):
    name: str
    host: str
    status: str       # "succeeded" | "failed"
    failed_task: Optional[str] = None

@dataclass(frozen=True)
class DeploySummary(BaseEvent):
    ok: int
    failed: int
