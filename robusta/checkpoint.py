"""
Checkpoints
-----------
Persist the resumable part of an Engine (bar counter, ledger, series
buffer, last bars, strategy state, warnings) as JSON so a run can be
continued in a new process.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

from .engine import Engine
from .repro import sha256_text, stable_json_dumps, utc_now_iso

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


def save_checkpoint(engine: Engine, path: str | Path) -> Path:
    body = engine.checkpoint()
    payload: Dict[str, Any] = {
        "version": CHECKPOINT_VERSION,
        "saved_utc": utc_now_iso(),
        "engine": body,
        "sha256": sha256_text(stable_json_dumps(body)),
    }
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(stable_json_dumps(payload), encoding="utf-8")
    logger.info("checkpoint at bar %d written to %s", engine.bar, out)
    return out


def load_checkpoint(path: str | Path) -> Dict[str, Any]:
    """Reads and verifies a checkpoint file; returns the engine snapshot."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if payload.get("version") != CHECKPOINT_VERSION:
        raise ValueError(f"unsupported checkpoint version: {payload.get('version')}")
    body = payload["engine"]
    if payload.get("sha256") != sha256_text(stable_json_dumps(body)):
        raise ValueError(f"checkpoint {path} is corrupted (hash mismatch)")
    return body


def resume(engine: Engine, path: str | Path) -> Engine:
    engine.restore(load_checkpoint(path))
    logger.info("resumed from %s at bar %d", path, engine.bar)
    return engine
