"""
Tests for robusta.run_meta / robusta.repro
------------------------------------------
Coverage:
- Data modification time verification (provenance).
- Config dump hashing.
- Stable JSON of engine values.
"""

import json
import math
import os
import time
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd

from robusta.config import RunConfig
from robusta.models import Side
from robusta.repro import sha256_file, sha256_text, stable_json_dumps, to_jsonable
from robusta.run_meta import build_run_meta, get_dependency_lock_hash, write_run_meta


def test_run_meta_captures_data_mtime(tmp_path: Path) -> None:
    p = tmp_path / "data.csv"
    p.write_text("simulated,data,content")
    past_time = time.time() - 3600
    os.utime(p, (past_time, past_time))

    meta = build_run_meta(
        cmd="pytest",
        argv=[],
        run_id="test_run",
        outputs_dir=tmp_path,
        data_path=str(p),
        hash_data=True,
    )

    recorded = datetime.fromisoformat(meta["data_mtime_utc"]).timestamp()
    assert abs(recorded - past_time) < 2.0
    assert meta["data_sha256"] == sha256_file(p)
    assert meta["data_size_bytes"] == len("simulated,data,content")


def test_missing_data_file_does_not_fail(tmp_path: Path) -> None:
    meta = build_run_meta(
        cmd="pytest",
        argv=[],
        run_id="r",
        outputs_dir=tmp_path,
        data_path=str(tmp_path / "nope.csv"),
    )
    assert meta["data_mtime_utc"] is None


def test_config_dump_is_hashed(tmp_path: Path) -> None:
    cfg = RunConfig(assets=("A", "B"), params={"w": 3})
    meta = build_run_meta(
        cmd="pytest", argv=["x"], run_id="r", outputs_dir=tmp_path, config_obj=cfg
    )
    assert meta["config_dump"]["assets"] == ["A", "B"]
    assert meta["config_dump_sha256"] == sha256_text(
        stable_json_dumps(meta["config_dump"])
    )
    path = write_run_meta(tmp_path / "out", meta)
    assert json.loads(path.read_text(encoding="utf-8"))["run_id"] == "r"


def test_dependency_lock_hash(tmp_path: Path) -> None:
    lock = tmp_path / "requirements.lock"
    lock.write_text("pandas==2.2.2\n")
    assert get_dependency_lock_hash(tmp_path) == sha256_file(lock)


def test_to_jsonable_handles_engine_values():
    ts = pd.Timestamp("2024-01-02", tz="UTC")
    out = to_jsonable(
        {"t": ts, "side": Side.BUY, "n": np.int64(3), "x": math.nan, 1: (1, 2)}
    )
    assert out == {"t": ts.isoformat(), "side": "B", "n": 3, "x": None, "1": [1, 2]}
    assert stable_json_dumps({"b": 1, "a": 2}) == '{"a":2,"b":1}'
