"""Data export utilities for reproducible research workflows."""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Sequence

import structlog

from behavioral_stress.behavior.models import StressScore

logger = structlog.get_logger(__name__)

SCORE_COLUMNS = [
    "timestamp", "level", "severity", "percentage", "combined",
    "mouse", "keyboard", "should_intervene",
]


def _score_record(score: StressScore) -> dict:
    return {
        "timestamp": score.timestamp,
        "level": score.level.value,
        "severity": score.severity.value,
        "percentage": round(score.percentage, 2),
        "combined": score.combined,
        "mouse": score.mouse,
        "keyboard": score.keyboard,
        "should_intervene": score.should_intervene,
    }


def export_scores_csv(scores: Sequence[StressScore], output_path: str | Path) -> Path:
    """Export a score history to a CSV file.

    Returns the resolved output path.
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=SCORE_COLUMNS)
        writer.writeheader()
        for score in scores:
            writer.writerow(_score_record(score))

    logger.info("export.csv_written", path=str(output), rows=len(scores))
    return output


def export_scores_json(
    scores: Sequence[StressScore],
    output_path: str | Path,
    *,
    include_metrics: bool = False,
) -> Path:
    """Export a score history to a JSON file.

    With ``include_metrics`` each record also carries the metric snapshot
    it was computed from.
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    records = []
    for score in scores:
        record = _score_record(score)
        if include_metrics and score.metrics is not None:
            record["metrics"] = score.metrics.model_dump(mode="json")
        records.append(record)

    with output.open("w", encoding="utf-8") as f:
        json.dump(records, f, indent=2)

    logger.info("export.json_written", path=str(output), rows=len(records))
    return output
