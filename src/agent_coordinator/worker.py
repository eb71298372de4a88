"""Background learning worker: insight analysis, retention pruning and staleness sweeps."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any

from agent_coordinator.config.settings import get_settings
from agent_coordinator.learning.system import LearningSystem
from agent_coordinator.runtime import build_runtime

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run the learning loop outside the HTTP process: drain the analysis queue, "
            "prune expired experiences and mark stale insights."
        )
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single maintenance cycle and exit.",
    )
    parser.add_argument(
        "--interval-s",
        type=float,
        default=None,
        help="Seconds between cycles. Defaults to AGENT_COORDINATOR_PERIODIC_ANALYSIS_INTERVAL_S.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level.",
    )
    return parser.parse_args(argv)


def run_maintenance_cycle(learning: LearningSystem) -> dict[str, Any]:
    stats = learning.process_experiences()
    pruned = learning.prune_old_experiences()
    stale = learning.mark_stale_insights()
    summary = {
        "experiences_processed": stats.experiences_processed,
        "insights_generated": stats.insights_generated,
        "insights_updated": stats.insights_updated,
        "experiences_pruned": pruned,
        "insights_marked_stale": stale,
    }
    logger.info(
        "worker event=cycle_completed processed=%d generated=%d updated=%d pruned=%d stale=%d",
        summary["experiences_processed"],
        summary["insights_generated"],
        summary["insights_updated"],
        pruned,
        stale,
    )
    return summary


def run_forever(
    learning: LearningSystem, interval_s: float, stop_event: threading.Event
) -> int:
    cycles = 0
    while not stop_event.is_set():
        try:
            run_maintenance_cycle(learning)
        except Exception as exc:  # noqa: BLE001
            logger.error("worker event=cycle_failed error=%s", exc, exc_info=True)
        cycles += 1
        stop_event.wait(interval_s)
    return cycles


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings = get_settings()
    runtime = build_runtime(settings)
    try:
        if args.once:
            run_maintenance_cycle(runtime.learning)
            return 0

        interval_s = args.interval_s or settings.periodic_analysis_interval_s
        stop_event = threading.Event()

        def _stop(signum: int, _frame: Any) -> None:
            logger.info("worker event=stop_requested signal=%d", signum)
            stop_event.set()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        logger.info("worker event=started interval_s=%s", interval_s)
        run_forever(runtime.learning, interval_s, stop_event)
        return 0
    finally:
        runtime.close()


if __name__ == "__main__":
    raise SystemExit(main())
