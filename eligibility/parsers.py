"""Raw record normalization and grouping into the frames the cohort aggregator consumes."""

import logging
from datetime import date, datetime
from typing import Iterable, Optional, Union, Mapping, Any

import numpy as np
import pandas as pd

from eligibility.models import AttendanceStatus

logger = logging.getLogger(__name__)

ATTENDANCE_COUNT_COLUMNS = ["student_id", "period_id", "status", "count"]
EXAM_AVERAGE_COLUMNS = ["student_id", "section", "average", "count"]

VALID_STATUSES = {s.value for s in AttendanceStatus}

Rows = Union[pd.DataFrame, Iterable[Mapping[str, Any]], Iterable[Any]]


def to_frame(rows: Rows, columns) -> pd.DataFrame:
    """
    Build a DataFrame from a DataFrame, dicts, or pydantic models.

    Missing columns are added empty so callers can always index them.
    """
    if isinstance(rows, pd.DataFrame):
        df = rows.copy()
    else:
        records = [r.model_dump() if hasattr(r, "model_dump") else dict(r) for r in rows]
        df = pd.DataFrame.from_records(records)

    for col in columns:
        if col not in df.columns:
            df[col] = pd.Series([np.nan] * len(df), dtype=object)
    return df


def normalize_status(value) -> Optional[str]:
    """
    Normalize an attendance status value ('late ', AttendanceStatus.LATE -> 'LATE').

    Returns None for anything that is not a known status.
    """
    if value is None:
        return None
    if isinstance(value, AttendanceStatus):
        return value.value
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        return None
    status = str(value).strip().upper()
    return status if status in VALID_STATUSES else None


def normalize_percentage(score, total_points: float) -> float:
    """
    Convert a raw exam score to a percentage of the exam's total points.

    Args:
        score: Raw points scored
        total_points: Points available on the exam

    Returns:
        Percentage in 0-100 range (missing scores count as 0)
    """
    if total_points is None or total_points <= 0:
        raise ValueError(f"Exam total points must be positive, got {total_points}")
    if score is None or pd.isna(score):
        return 0.0
    return (float(score) / float(total_points)) * 100.0


def clean_student_id(series: pd.Series) -> pd.Series:
    """
    Strip ids and turn blanks into None so they can be dropped as one bucket.

    Integer ids that pandas widened to float (101 -> 101.0, because another row
    in the column is missing) are written back as '101'.
    """
    def clean(value):
        if value is None or (not isinstance(value, str) and pd.isna(value)):
            return None
        if isinstance(value, (float, np.floating)) and float(value).is_integer():
            value = int(value)
        value = str(value).strip()
        return value or None

    return series.map(clean).astype(object)


def prepare_attendance_counts(rows: Rows) -> pd.DataFrame:
    """
    Clean grouped attendance counts (student_id, period_id, status, count).

    Rows with no student id or an unknown status are dropped; non-numeric or
    negative counts become zero. Nothing here raises for bad data.
    """
    df = to_frame(rows, ATTENDANCE_COUNT_COLUMNS)[ATTENDANCE_COUNT_COLUMNS].copy()
    if df.empty:
        return pd.DataFrame(columns=ATTENDANCE_COUNT_COLUMNS)

    df["student_id"] = clean_student_id(df["student_id"])
    df["period_id"] = clean_student_id(df["period_id"])
    df["status"] = df["status"].map(normalize_status)
    df["count"] = pd.to_numeric(df["count"], errors="coerce").fillna(0).clip(lower=0)

    missing_id = df["student_id"].isna()
    unknown_status = df["status"].isna()
    if missing_id.any():
        logger.warning("Dropping %d attendance rows without a student id", int(missing_id.sum()))
    if (unknown_status & ~missing_id).any():
        logger.warning(
            "Dropping %d attendance rows with an unknown status", int((unknown_status & ~missing_id).sum())
        )

    df = df[~missing_id & ~unknown_status].copy()
    df["count"] = df["count"].astype(int)
    return df.reset_index(drop=True)


def prepare_exam_averages(rows: Rows) -> pd.DataFrame:
    """
    Clean grouped exam averages (student_id, section, average, count).

    Rows without a student id, without a section or with a non-positive count
    are dropped; a non-numeric average counts as 0.
    """
    df = to_frame(rows, EXAM_AVERAGE_COLUMNS)[EXAM_AVERAGE_COLUMNS].copy()
    if df.empty:
        return pd.DataFrame(columns=EXAM_AVERAGE_COLUMNS)

    df["student_id"] = clean_student_id(df["student_id"])
    df["section"] = clean_student_id(df["section"])
    df["average"] = pd.to_numeric(df["average"], errors="coerce").fillna(0.0)
    df["count"] = pd.to_numeric(df["count"], errors="coerce").fillna(0)

    keep = df["student_id"].notna() & df["section"].notna() & (df["count"] > 0)
    if (~keep).any():
        logger.warning("Dropping %d exam rows with a missing key or empty count", int((~keep).sum()))

    df = df[keep].copy()
    df["count"] = df["count"].astype(int)
    return df.reset_index(drop=True)


def group_attendance_marks(rows: Rows) -> pd.DataFrame:
    """
    Group raw marks (student_id, period_id, status) into per-status counts.

    This is the same shape a storage GROUP BY student, period, status returns.
    """
    df = to_frame(rows, ["student_id", "period_id", "status"])
    if df.empty:
        return pd.DataFrame(columns=ATTENDANCE_COUNT_COLUMNS)
    df = df.assign(count=1)
    df["status"] = df["status"].map(normalize_status)
    df = df.dropna(subset=["student_id", "period_id", "status"])
    grouped = df.groupby(["student_id", "period_id", "status"], sort=True)["count"].sum()
    return grouped.reset_index()[ATTENDANCE_COUNT_COLUMNS]


def group_exam_scores(rows: Rows) -> pd.DataFrame:
    """Group raw scores (student_id, section, percentage) into per-section averages."""
    df = to_frame(rows, ["student_id", "section", "percentage"])
    if df.empty:
        return pd.DataFrame(columns=EXAM_AVERAGE_COLUMNS)
    df["percentage"] = pd.to_numeric(df["percentage"], errors="coerce")
    df = df.dropna(subset=["student_id", "section", "percentage"])
    grouped = df.groupby(["student_id", "section"], sort=True)["percentage"].agg(["mean", "count"])
    grouped = grouped.reset_index().rename(columns={"mean": "average"})
    return grouped[EXAM_AVERAGE_COLUMNS]


def parse_week_of(value: Union[str, date, datetime]) -> date:
    """
    Parse a week-of value and normalize it to a calendar day.

    Raises:
        ValueError: if the value is empty or not a date
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("Missing week-of date")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        parsed = pd.to_datetime(str(value).strip())
    except (ValueError, TypeError, OverflowError) as e:
        raise ValueError(f"Invalid date format for week-of: '{value}'") from e
    if pd.isna(parsed):
        raise ValueError(f"Invalid date format for week-of: '{value}'")
    return parsed.normalize().date()
