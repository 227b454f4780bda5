"""
Run Metadata
------------
Captures and writes execution details (git SHA, config hash, CLI args,
data fingerprint) next to the artifacts of a run.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .repro import (
    config_to_dict,
    env_info,
    sha256_file,
    sha256_text,
    stable_json_dumps,
    try_git_describe,
    try_git_sha,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

LOCKFILE = "requirements.lock"


def get_dependency_lock_hash(root: str | Path | None = None) -> Optional[str]:
    """Hash of `requirements.lock` in `root` (or the cwd), if there is one."""
    candidates = [Path(root or ".") / LOCKFILE]
    candidates.append(Path(__file__).resolve().parent.parent / LOCKFILE)
    for path in candidates:
        if path.is_file():
            return sha256_file(path)
    return None


def build_run_meta(
    *,
    cmd: str,
    argv: list[str],
    run_id: str,
    outputs_dir: str | Path,
    config_path: Optional[str] = None,
    config_obj: Optional[Any] = None,
    data_path: Optional[str] = None,
    strategy: Optional[str] = None,
    seed: Optional[int] = None,
    hash_data: bool = False,
) -> Dict[str, Any]:
    """Constructs a metadata dictionary for the current execution context."""
    meta: Dict[str, Any] = {
        "cmd": cmd,
        "run_id": run_id,
        "argv": argv,
        "outputs_dir": str(Path(outputs_dir)),
        "timestamp_utc": utc_now_iso(),
        "git_sha": try_git_sha(),
        "git_describe": try_git_describe(),
        "strategy": strategy,
        "seed": seed,
        "env": env_info(),
        "dependency_lock_sha256": get_dependency_lock_hash(),
    }

    if config_path:
        meta["config_path"] = config_path
        meta["config_sha256"] = sha256_file(config_path)

    if config_obj is not None:
        cfg_dict = config_to_dict(config_obj)
        meta["config_dump"] = cfg_dict
        meta["config_dump_sha256"] = sha256_text(stable_json_dumps(cfg_dict))

    if data_path:
        p = Path(data_path)
        meta["data_path"] = data_path
        try:
            stat = p.stat()
        except OSError:
            logger.warning("cannot stat data file %s", data_path)
            meta["data_size_bytes"] = None
            meta["data_mtime_utc"] = None
        else:
            meta["data_size_bytes"] = stat.st_size
            meta["data_mtime_utc"] = datetime.fromtimestamp(
                stat.st_mtime, tz=timezone.utc
            ).isoformat()
            if hash_data:
                meta["data_sha256"] = sha256_file(p)

    return meta


def write_run_meta(outputs_dir: str | Path, meta: Dict[str, Any]) -> Path:
    """Writes the metadata dictionary to run_meta.json in the output directory."""
    out_dir = Path(outputs_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    path = out_dir / "run_meta.json"
    path.write_text(json.dumps(meta, indent=2), encoding="utf-8")
    return path
