"""Analysis helpers — pandas-based utilities for research workflows."""

from __future__ import annotations

from typing import Any, Sequence

import pandas as pd

from behavioral_stress.behavior.models import MetricKey, StressScore


def scores_to_dataframe(scores: Sequence[StressScore], *, include_metrics: bool = False) -> pd.DataFrame:
    """Load a score history into a :class:`pandas.DataFrame`.

    Columns: ``combined``, ``percentage``, ``mouse``, ``keyboard``,
    ``level``, ``severity``; with ``include_metrics`` one extra column per
    metric (``mouse.movement_velocity`` …).  The ``timestamp`` column is
    converted from epoch seconds and set as the index.
    """
    records = []
    for s in scores:
        record: dict[str, Any] = {
            "timestamp": s.timestamp,
            "combined": s.combined,
            "percentage": s.percentage,
            "mouse": s.mouse,
            "keyboard": s.keyboard,
            "level": s.level.value,
            "severity": s.severity.value,
        }
        if include_metrics and s.metrics is not None:
            for key in MetricKey:
                record[key.value] = s.metrics.value(key)
        records.append(record)

    df = pd.DataFrame(records)
    if not df.empty:
        df["timestamp"] = pd.to_datetime(df["timestamp"], unit="s")
        df = df.set_index("timestamp").sort_index()
    return df


def compute_summary(df: pd.DataFrame, column: str = "combined") -> dict[str, Any]:
    """Return summary statistics for one column of a score DataFrame."""
    if df.empty or column not in df.columns:
        return {"count": 0}

    summary = {
        "count": int(df[column].count()),
        "mean": round(float(df[column].mean()), 4),
        "std": round(float(df[column].std()), 4) if df[column].count() > 1 else 0.0,
        "min": float(df[column].min()),
        "max": float(df[column].max()),
        "median": float(df[column].median()),
        "q25": float(df[column].quantile(0.25)),
        "q75": float(df[column].quantile(0.75)),
    }
    if "level" in df.columns:
        summary["levels"] = {k: int(v) for k, v in df["level"].value_counts().items()}
    return summary


def resample_scores(df: pd.DataFrame, rule: str = "1min") -> pd.DataFrame:
    """Resample a score DataFrame to a coarser time resolution.

    Parameters
    ----------
    df:
        DataFrame with a ``DatetimeIndex`` and ``combined`` / ``percentage``
        columns.
    rule:
        Pandas offset alias (``'30s'``, ``'1min'``, ``'5min'``, etc.).
    """
    if df.empty:
        return df
    return df.resample(rule).agg(
        combined_mean=("combined", "mean"),
        combined_max=("combined", "max"),
        percentage_mean=("percentage", "mean"),
        count=("combined", "count"),
    )
