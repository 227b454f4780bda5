"""
Reproducibility Helpers
-----------------------
Hashing, git versioning and deterministic JSON used by run metadata and
checkpoints, so a run can be tied back to its code, config and data.
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import platform
import subprocess
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def to_jsonable(obj: Any) -> Any:
    """Recursively converts engine values (timestamps, enums, numpy, NaN)."""
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (pd.Timestamp, datetime)):
        return obj.isoformat()
    if isinstance(obj, np.generic):
        obj = obj.item()
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    return obj


def stable_json_dumps(obj: Any) -> str:
    """
    Produce a stable, sorted JSON string for hashing and comparison.
    """
    return json.dumps(
        to_jsonable(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def sha256_file(path: str | Path, *, chunk_size: int = 1024 * 1024) -> str:
    """Compute SHA256 hash of a file by reading in chunks."""
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for block in iter(lambda: f.read(chunk_size), b""):
            h.update(block)
    return h.hexdigest()


def _git(*args: str) -> Optional[str]:
    try:
        out = subprocess.check_output(["git", *args], stderr=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError):
        return None
    return out.decode("utf-8").strip() or None


def try_git_sha() -> Optional[str]:
    return _git("rev-parse", "HEAD")


def try_git_describe() -> Optional[str]:
    return _git("describe", "--tags", "--always")


def env_info() -> Dict[str, Any]:
    """Interpreter, platform and numeric stack versions."""
    return {
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "executable": sys.executable,
        "cwd": os.getcwd(),
        "pandas": pd.__version__,
        "numpy": np.__version__,
    }


def config_to_dict(cfg: Any) -> Dict[str, Any]:
    """JSON-ready dict of a config dataclass (tuples become lists)."""
    if not is_dataclass(cfg) or isinstance(cfg, type):
        raise TypeError("config_to_dict expected a dataclass instance")
    return to_jsonable(asdict(cfg))
