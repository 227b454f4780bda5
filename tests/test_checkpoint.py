"""
Tests for robusta.checkpoint
----------------------------
A run split by a checkpoint/resume ends with the same ledger as an
uninterrupted run.
"""

import json

import pytest

from robusta.checkpoint import load_checkpoint, resume, save_checkpoint
from robusta.engine import Engine, group_slices


def momentum(ctx, state):
    closes = ctx.series("X", "c", 2)
    state["seen"] = state.get("seen", 0) + 1
    if len(closes) < 2:
        return
    ctx.order_target({"X": 0.9 if closes[0] > closes[1] else 0.0})


PRICES = {"X": [10, 11, 12, 11, 10, 12, 13]}


def test_resume_matches_uninterrupted_run(tmp_path, make_cfg, make_stream):
    cfg = make_cfg(capital=1000.0)
    full = Engine(cfg, momentum).run(make_stream(PRICES))

    slices = list(group_slices(make_stream(PRICES)))
    first = Engine(cfg, momentum)
    for ts, data in slices[:4]:
        first.step(ts, data)
    path = save_checkpoint(first, tmp_path / "ckpt.json")

    second = resume(Engine(cfg, momentum), path)
    assert second.bar == 3
    assert second.state["seen"] == 4
    for i, (ts, data) in enumerate(slices[4:], start=4):
        second.step(ts, data, is_last=i == len(slices) - 1)
    result = second.finish()

    cols = ["side", "status", "open_volume", "open_price", "pnl"]
    assert result.trades[cols].to_dict("records") == full.trades[cols].to_dict(
        "records"
    )
    assert list(result.equity) == pytest.approx(list(full.equity))
    assert result.summary == full.summary


def test_corrupted_checkpoint_is_refused(tmp_path, make_cfg, make_stream):
    engine = Engine(make_cfg(), momentum)
    for ts, data in group_slices(make_stream({"X": [10, 11]})):
        engine.step(ts, data)
    path = save_checkpoint(engine, tmp_path / "ckpt.json")

    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["engine"]["bar"] = 99
    path.write_text(json.dumps(payload), encoding="utf-8")
    with pytest.raises(ValueError, match="hash mismatch"):
        load_checkpoint(path)


def test_restore_needs_fresh_engine(tmp_path, make_cfg, make_stream):
    engine = Engine(make_cfg(), momentum)
    for ts, data in group_slices(make_stream({"X": [10]})):
        engine.step(ts, data)
    path = save_checkpoint(engine, tmp_path / "ckpt.json")
    with pytest.raises(RuntimeError):
        resume(engine, path)
