"""Application entrypoint — replay recorded input or run one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog
from pydantic import ValidationError

from behavioral_stress.behavior.baseline import BaselineEstimator
from behavioral_stress.behavior.models import StressScore
from behavioral_stress.behavior.pipeline import StressMonitor
from behavioral_stress.config import Settings, get_settings
from behavioral_stress.logger import setup_logging
from behavioral_stress.models import InputEvent, parse_input_event
from behavioral_stress.storage.base import KeyValueStore, MemoryStore

logger = structlog.get_logger(__name__)


class ReplayClock:
    """Manually advanced clock so a recording replays in simulated time."""

    def __init__(self, start: float) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance_to(self, moment: float) -> None:
        self._now = max(self._now, moment)


def load_events(path: Path) -> list[InputEvent]:
    """Parse a JSON-lines recording, skipping blank and invalid lines."""
    events: list[InputEvent] = []
    with path.open(encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(parse_input_event(line))
            except ValidationError as exc:
                logger.warning("replay.invalid_event", line=lineno, errors=exc.error_count())
    events.sort(key=lambda e: e.timestamp)
    return events


async def _open_store(memory: bool) -> KeyValueStore:
    if memory:
        return MemoryStore()
    from behavioral_stress.storage.database import init_db
    from behavioral_stress.storage.repository import SQLKeyValueStore

    await init_db()
    return SQLKeyValueStore()


async def replay(
    events: list[InputEvent],
    settings: Settings,
    store: KeyValueStore,
    *,
    recalibrate: bool = False,
) -> list[StressScore]:
    """Drive a monitor through *events*: calibrate if needed, then score.

    One detection tick runs every ``detection_interval_seconds`` of
    simulated time; each score is printed as a JSON line.
    """
    if not events:
        return []

    clock = ReplayClock(events[0].timestamp)
    monitor = StressMonitor(store=store, settings=settings, clock=clock, autostart_detection=False)
    estimator = monitor.estimator

    await estimator.load_baseline()
    if recalibrate or not estimator.has_baseline:
        await estimator.start_calibration()

    scores: list[StressScore] = []
    interval = settings.detection_interval_seconds
    next_tick = clock() + interval

    async def step() -> None:
        if monitor.is_calibrating:
            await monitor.calibration_tick()
            return
        score = await monitor.tick()
        if score is not None:
            scores.append(score)
            print(score.model_dump_json(exclude={"metrics"}), flush=True)

    for event in events:
        while event.timestamp >= next_tick:
            clock.advance_to(next_tick)
            await step()
            next_tick += interval
        clock.advance_to(event.timestamp)
        monitor.on_event(event)

    clock.advance_to(next_tick)
    await step()
    await monitor.close()
    logger.info(
        "replay.finished",
        events=len(events),
        scores=len(scores),
        calibrated=estimator.has_baseline,
    )
    return scores


async def _replay_command(args: argparse.Namespace, settings: Settings) -> int:
    path = Path(args.file)
    if not path.exists():
        print(f"No such file: {path}", file=sys.stderr)
        return 1

    if args.sensitivity:
        settings = settings.model_copy(update={"sensitivity": args.sensitivity})
    if args.calibration_seconds:
        settings = settings.model_copy(update={"calibration_duration_seconds": args.calibration_seconds})

    store = await _open_store(args.memory)
    try:
        scores = await replay(load_events(path), settings, store, recalibrate=args.recalibrate)
    finally:
        await store.close()

    if args.export_csv:
        from behavioral_stress.research.export import export_scores_csv

        export_scores_csv(scores, args.export_csv)
    return 0


async def _baseline_command(args: argparse.Namespace, settings: Settings) -> int:
    store = await _open_store(memory=False)
    try:
        estimator = BaselineEstimator(store, key_prefix=settings.storage_key_prefix)
        if args.action == "reset":
            await estimator.reset_baseline()
            print("Baseline removed.")
            return 0

        baseline = await estimator.load_baseline()
        if baseline is None:
            print("No baseline stored.")
            return 1
        print(json.dumps(baseline.model_dump(mode="json"), indent=2))
        return 0
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="behavioral-stress",
        description="Behavioral stress detection from pointer, keyboard and scroll activity.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    # ── replay ────────────────────────────────────────────────
    replay_parser = sub.add_parser("replay", help="Replay a JSON-lines input recording.")
    replay_parser.add_argument("file")
    replay_parser.add_argument("--sensitivity", choices=["low", "medium", "high"], default=None)
    replay_parser.add_argument("--calibration-seconds", type=float, default=None)
    replay_parser.add_argument("--recalibrate", action="store_true")
    replay_parser.add_argument("--memory", action="store_true", help="Do not touch the database.")
    replay_parser.add_argument("--export-csv", default=None)

    # ── baseline ──────────────────────────────────────────────
    baseline_parser = sub.add_parser("baseline", help="Inspect or reset the stored baseline.")
    baseline_parser.add_argument("action", choices=["show", "reset"])

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "init-db":
        from behavioral_stress.storage.database import init_db

        asyncio.run(init_db())
        print("Database tables created.")
    elif args.command == "replay":
        sys.exit(asyncio.run(_replay_command(args, settings)))
    elif args.command == "baseline":
        sys.exit(asyncio.run(_baseline_command(args, settings)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
