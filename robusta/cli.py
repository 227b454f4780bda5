"""
Robusta CLI

Glue layer: config -> data -> engine -> outputs.
"""

from __future__ import annotations

import argparse
import importlib
import json
import random
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from .checkpoint import save_checkpoint
from .config import load_config
from .data_io import BarStream, load_bars
from .engine import Engine
from .errors import ConfigurationError
from .logging_setup import get_logger, setup_logging
from .repro import to_jsonable
from .run_meta import build_run_meta, write_run_meta

logger = get_logger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _now_run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def _write_json(path: Path, obj: Any) -> None:
    path.write_text(json.dumps(to_jsonable(obj), indent=2), encoding="utf-8")


def _print_compact_json(obj: Any) -> None:
    print(json.dumps(to_jsonable(obj), separators=(",", ":")))


def load_strategy(ref: str) -> Any:
    """Resolves 'package.module:attr'; classes are instantiated."""
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError("strategy", f"expected 'module:attr', got {ref!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError("strategy", f"cannot import {module_name!r}") from exc
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ConfigurationError(
            "strategy", f"{module_name!r} has no attribute {attr!r}"
        ) from None
    return obj() if isinstance(obj, type) else obj


def cmd_backtest(
    config_path: str,
    data_path: str,
    *,
    strategy: str | None = None,
    out_dir: str = "outputs/backtest",
    run_id: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    checkpoint: str | None = None,
    seed: int | None = None,
    hash_data: bool = False,
    argv: list[str] | None = None,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if date_from:
        overrides["start_date"] = date_from
    if date_to:
        overrides["end_date"] = date_to
    if strategy:
        overrides["strategy"] = strategy
    cfg = load_config(config_path, overrides)
    if not cfg.strategy:
        raise ConfigurationError("strategy", "no strategy given (--strategy)")

    if seed is not None:
        random.seed(seed)
        np.random.seed(seed)

    frame = load_bars(data_path)
    stream = BarStream.from_config(frame, cfg)
    engine = Engine(cfg, load_strategy(cfg.strategy))
    result = engine.run(stream)

    run_id = run_id or _now_run_id()
    root = Path(out_dir) / run_id
    root.mkdir(parents=True, exist_ok=True)

    # artifacts
    result.trades.to_csv(root / "trades.csv", index=False)
    result.records.to_csv(root / "records.csv", index=False)
    result.warnings.to_csv(root / "warnings.csv", index=False)
    result.equity.to_csv(root / "equity.csv", index_label="date")
    _write_json(root / "summary.json", result.summary)
    if checkpoint:
        save_checkpoint(engine, checkpoint)

    meta = build_run_meta(
        cmd="backtest",
        argv=argv or [],
        run_id=run_id,
        outputs_dir=root,
        config_path=config_path,
        config_obj=cfg,
        data_path=data_path,
        strategy=cfg.strategy,
        seed=seed,
        hash_data=hash_data,
    )
    meta.update(
        {
            "date_from": date_from,
            "date_to": date_to,
            "bars": result.bars,
            "warnings": len(result.warnings),
        }
    )
    write_run_meta(root, meta)

    out = {"run_id": run_id, "artifacts_dir": str(root), **result.summary}
    _print_compact_json(out)
    return out


def _add_backtest_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", required=True)
    p.add_argument("--data", required=True)
    p.add_argument(
        "--strategy", default=None, help="module:attr, overrides the config value"
    )
    p.add_argument("--from", dest="date_from", default=None)
    p.add_argument("--to", dest="date_to", default=None)
    p.add_argument("--out-dir", default="outputs/backtest")
    p.add_argument("--run-id", default=None)
    p.add_argument(
        "--checkpoint", default=None, help="Write the final engine state here."
    )
    p.add_argument("--log-level", default="WARNING")
    p.add_argument("--log-dir", default=None)
    p.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Determinism seed.",
    )
    p.add_argument(
        "--hash-data",
        action="store_true",
        help="Compute SHA256 of data file (can be slow for large files).",
    )


def main(argv: list[str] | None = None) -> None:
    p = argparse.ArgumentParser(description="Robusta bar-stepping backtester")
    sub = p.add_subparsers(dest="cmd", required=True)

    _add_backtest_args(sub.add_parser("backtest", help="Run a single backtest"))
    _add_backtest_args(sub.add_parser("run-backtest", help="Alias for backtest"))

    args = p.parse_args(argv)
    argv_list = list(argv) if argv is not None else []

    setup_logging(args.log_level, logs_dir=args.log_dir)

    if args.cmd in ("backtest", "run-backtest"):
        try:
            cmd_backtest(
                args.config,
                args.data,
                strategy=args.strategy,
                out_dir=args.out_dir,
                run_id=args.run_id,
                date_from=args.date_from,
                date_to=args.date_to,
                checkpoint=args.checkpoint,
                seed=args.seed,
                hash_data=bool(args.hash_data),
                argv=argv_list,
            )
        except ConfigurationError as exc:
            logger.error("%s", exc)
            raise SystemExit(2) from exc


if __name__ == "__main__":
    main()
