"""
Capture worker - periodic light capture of all PS records.

Each cycle runs the audit-capture job: fetch recent records from every
configured source, snapshot the ones whose state changed and record the
status and package changes they reveal.

CONSTRAINTS:
- At most one capture in flight; a cycle that finds the job already
  running (for example a manual trigger from the API) is skipped
- Graceful shutdown on SIGTERM/SIGINT
- Capture is not sharded across processes: run one worker per database,
  either standalone or inside the API process (ENABLE_CAPTURE_WORKER)

Usage:
    python -m provisioning_ops.workers.capture_worker
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from provisioning_ops.errors import ConflictError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CAPTURE_INTERVAL_SECONDS = int(os.getenv("CAPTURE_INTERVAL_SECONDS", "300"))
CAPTURE_LOOKBACK_YEARS = float(os.getenv("CAPTURE_LOOKBACK_YEARS", "1"))


@dataclass
class WorkerStats:
    """Cumulative statistics for the worker process lifetime."""

    cycles: int = 0
    records_scanned: int = 0
    events_found: int = 0
    records_skipped: int = 0
    skipped_cycles: int = 0
    errors: int = 0
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        uptime = (
            datetime.now(timezone.utc) - self.started_at
        ).total_seconds()
        return {
            "cycles": self.cycles,
            "records_scanned": self.records_scanned,
            "events_found": self.events_found,
            "records_skipped": self.records_skipped,
            "skipped_cycles": self.skipped_cycles,
            "errors": self.errors,
            "uptime_seconds": round(uptime, 2),
        }


async def run_cycle(engine, stats: WorkerStats, since_years: float = CAPTURE_LOOKBACK_YEARS) -> None:
    """Run one capture cycle."""
    try:
        summary = await engine.capture_all(since_years)
    except ConflictError:
        stats.skipped_cycles += 1
        logger.info("capture_worker.cycle_skipped", extra={"reason": "capture already running"})
        return
    except Exception:
        stats.errors += 1
        logger.exception("capture_worker.cycle_error", extra={"cycle": stats.cycles})
        return

    stats.cycles += 1
    stats.records_scanned += summary.records_scanned
    stats.events_found += summary.events_found
    stats.records_skipped += summary.records_skipped

    if summary.events_found or summary.records_skipped:
        logger.info(
            "capture_worker.cycle_completed",
            extra={
                "cycle": stats.cycles,
                "records_scanned": summary.records_scanned,
                "events_found": summary.events_found,
                "records_skipped": summary.records_skipped,
            },
        )


async def run_loop(
    engine,
    shutdown_event: asyncio.Event,
    interval_seconds: int = CAPTURE_INTERVAL_SECONDS,
    stats: Optional[WorkerStats] = None,
) -> WorkerStats:
    """Capture every interval_seconds until shutdown_event is set."""
    stats = stats or WorkerStats()
    while not shutdown_event.is_set():
        await run_cycle(engine, stats)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass  # Normal: timeout = no shutdown, continue loop
    return stats


async def run_worker() -> None:
    """Main worker loop. Runs until SIGTERM/SIGINT."""
    from provisioning_ops.api.dependencies.engine import build_analysis_engine
    from provisioning_ops.database.session import init_models

    shutdown_event = asyncio.Event()

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, shutting down gracefully", sig)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    init_models()
    engine = build_analysis_engine()

    logger.info(
        "Capture worker starting",
        extra={
            "interval_seconds": CAPTURE_INTERVAL_SECONDS,
            "lookback_years": CAPTURE_LOOKBACK_YEARS,
            "connectors": [c.name for c in engine.connectors],
        },
    )

    try:
        stats = await run_loop(engine, shutdown_event)
    finally:
        engine.close()

    logger.info("Capture worker stopped", extra=stats.to_dict())


def main():
    """Entry point for running worker from command line."""
    try:
        asyncio.run(run_worker())
        sys.exit(0)
    except Exception as e:
        logger.error("Capture worker crashed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
