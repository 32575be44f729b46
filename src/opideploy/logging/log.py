# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/opideploy/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
import uuid

def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "opideploy",
    run_name: str | None = None,
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full DEBUG trace in a per-run log file, one line per thread event
      - console output at INFO (DEBUG with --verbose)
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())
    run_name = run_name or name

    if base_dir is None:
        base_dir = Path.home() / ".opideploy" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{run_name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False

    # paramiko reports every handshake at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)

    # instances run in worker threads, keep the thread on every line
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(threadName)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info(f"=== {run_name} run started ===")
    logger.info(f"run_id={run_id}")
    logger.info(f"log_file={log_path}")

    return logger, run_id, log_path
