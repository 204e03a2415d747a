from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path

from manifold_index.data.sinks import ParquetSnapshotSink
from manifold_index.data.sources import ParquetObservationSource, coerce_ts
from manifold_index.exceptions.core import CycleError
from manifold_index.index.engine import IndexEngine
from manifold_index.index.ledger import SnapshotLedger
from manifold_index.utils.config import load_config
from manifold_index.utils.logger import get_logger, init_logging, log_info, log_warn
from manifold_index.utils.timer import days_to_ms

REPO_ROOT = Path(__file__).resolve().parents[1]

_LOGGER = get_logger(__name__)


def _make_run_id() -> str:
    return "INDEX_" + datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _schedule(start_ts: int, end_ts: int, every_days: int) -> list[int]:
    step = days_to_ms(every_days)
    out = []
    ts = start_ts
    while ts <= end_ts:
        out.append(ts)
        ts += step
    return out


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill the manifold index over a date range")
    parser.add_argument("--config", default=str(REPO_ROOT / "configs" / "index.json"))
    parser.add_argument("--data", default=str(REPO_ROOT / "data" / "observations"), help="<root>/<symbol>/*.parquet")
    parser.add_argument("--out", default=str(REPO_ROOT / "artifacts" / "index"), help="snapshot output root")
    parser.add_argument("--start", required=True)
    parser.add_argument("--end", default=None, help="default: now (UTC)")
    parser.add_argument("--workers", type=int, default=4)
    args = parser.parse_args()

    run_id = _make_run_id()
    init_logging(str(REPO_ROOT / "configs" / "logging.json"), run_id=run_id, mode="backfill")

    cfg = load_config(args.config)
    start_ts = coerce_ts(args.start)
    end_ts = coerce_ts(args.end) if args.end else coerce_ts(datetime.now(timezone.utc))

    sink = ParquetSnapshotSink(args.out)
    # resume from whatever is already on disk
    ledger = SnapshotLedger(sink=sink, history=sink.read_all())
    head = ledger.head
    if head is not None and head.config_digest != cfg.digest():
        log_warn(_LOGGER, "app.backfill.config_changed", head_ts=head.timestamp, head_digest=head.config_digest)

    schedule = [ts for ts in _schedule(start_ts, end_ts, cfg.update_frequency) if head is None or ts > head.timestamp]
    log_info(
        _LOGGER,
        "app.backfill.start",
        config=cfg.to_dict(),
        cycles=len(schedule),
        resume_from=head.timestamp if head is not None else None,
    )

    engine = IndexEngine(ParquetObservationSource(root=args.data), cfg, ledger=ledger)
    results = engine.backfill(schedule, max_workers=args.workers)

    failure = next((r for r in results if isinstance(r, CycleError)), None)
    if failure is not None:
        log_warn(_LOGGER, "app.backfill.stopped", **failure.to_dict())
    log_info(_LOGGER, "app.backfill.done", committed=len(ledger), last=ledger.head.to_dict() if ledger.head else None)


if __name__ == "__main__":
    main()
