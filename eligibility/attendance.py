"""
Attendance calculation.

Formula: (Present + Late / 2) / (Countable sessions - Excused) * 100

- PRESENT counts as 1, LATE as 0.5 (two lates equal one absence)
- ABSENT counts as 0
- EXCUSED is removed from both numerator and denominator
- Non-countable sessions (assessment days, cancelled sessions) are filtered
  out by the caller before marks reach this module
"""

import math
from typing import Iterable, Optional, Union

from eligibility.models import AttendanceCounts, AttendanceMark, AttendanceStats, AttendanceStatus

DEFAULT_REQUIRED_PERCENTAGE = 75.0

STATUS_LABELS = {
    AttendanceStatus.PRESENT: "Present",
    AttendanceStatus.LATE: "Late",
    AttendanceStatus.ABSENT: "Absent",
    AttendanceStatus.EXCUSED: "Excused",
}

# Every status must have a bucket here; see count_statuses.
STATUS_BUCKETS = {
    AttendanceStatus.PRESENT: "present",
    AttendanceStatus.LATE: "late",
    AttendanceStatus.ABSENT: "absent",
    AttendanceStatus.EXCUSED: "excused",
}

MarkLike = Union[AttendanceMark, AttendanceStatus, str]


def _status_of(mark: MarkLike) -> AttendanceStatus:
    status = getattr(mark, "status", mark)
    # Raises ValueError for anything outside the enum
    return AttendanceStatus(status)


def count_statuses(marks: Iterable[MarkLike]) -> AttendanceCounts:
    """
    Count marks per status.

    Args:
        marks: AttendanceMark objects (or bare statuses)

    Returns:
        AttendanceCounts with one bucket per status
    """
    counts = {bucket: 0 for bucket in STATUS_BUCKETS.values()}
    for mark in marks:
        counts[STATUS_BUCKETS[_status_of(mark)]] += 1
    return AttendanceCounts(**counts)


def stats_from_counts(
    counts: AttendanceCounts,
    countable_session_count: int,
    required_percentage: float = DEFAULT_REQUIRED_PERCENTAGE
) -> AttendanceStats:
    """
    Build AttendanceStats from per-status counts.

    Shared by the single-student evaluator and the cohort aggregator so both
    paths apply the same formula.
    """
    if countable_session_count < 0:
        raise ValueError(f"Countable session count cannot be negative: {countable_session_count}")
    if required_percentage < 0:
        raise ValueError(f"Required percentage cannot be negative: {required_percentage}")
    if min(counts.present, counts.late, counts.absent, counts.excused) < 0:
        raise ValueError(f"Attendance counts cannot be negative: {counts}")
    if counts.total > countable_session_count:
        raise ValueError(
            f"{counts.total} marks recorded for only {countable_session_count} countable sessions"
        )

    effective_present = counts.present + counts.late / 2
    effective_total = countable_session_count - counts.excused
    percentage = (effective_present / effective_total) * 100 if effective_total > 0 else 0.0

    return AttendanceStats(
        present_count=counts.present,
        late_count=counts.late,
        absent_count=counts.absent,
        excused_count=counts.excused,
        total_countable_sessions=countable_session_count,
        effective_present=effective_present,
        effective_total=effective_total,
        percentage=percentage,
        met=percentage >= required_percentage,
        required_percentage=required_percentage,
    )


def evaluate_attendance(
    marks: Iterable[MarkLike],
    countable_session_count: int,
    required_percentage: float = DEFAULT_REQUIRED_PERCENTAGE
) -> AttendanceStats:
    """
    Turn a student's attendance marks into a percentage and a verdict.

    Args:
        marks: Marks for countable sessions only
        countable_session_count: Number of countable sessions in the period
        required_percentage: Minimum percentage required (default: 75)

    Returns:
        AttendanceStats. When nothing is assessable (no sessions, or every
        session excused) the percentage is 0 and the requirement is not met.
    """
    return stats_from_counts(count_statuses(marks), countable_session_count, required_percentage)


def attendance_percentage(counts: AttendanceCounts) -> Optional[float]:
    """
    Percentage from counts alone, using the recorded total as denominator.

    Returns None when there are no countable sessions (all excused or none recorded).
    """
    countable = counts.total - counts.excused
    if countable <= 0:
        return None
    return ((counts.present + counts.late / 2) / countable) * 100


def meets_attendance_requirement(
    percentage: Optional[float],
    required_percentage: float = DEFAULT_REQUIRED_PERCENTAGE
) -> bool:
    return percentage is not None and percentage >= required_percentage


def effective_absences(counts: AttendanceCounts) -> float:
    """Absences with lates folded in: absent + late / 2."""
    return counts.absent + counts.late / 2


def absences_allowed(
    counts: AttendanceCounts,
    remaining_sessions: int,
    required_percentage: float = DEFAULT_REQUIRED_PERCENTAGE
) -> int:
    """
    How many of the remaining sessions a student can still miss.

    Assumes every other remaining session is attended. Negative when the
    student cannot reach the requirement even with perfect attendance.
    """
    if remaining_sessions < 0:
        raise ValueError(f"Remaining sessions cannot be negative: {remaining_sessions}")

    required_fraction = required_percentage / 100
    current_effective_present = counts.present + counts.late / 2
    current_countable = counts.total - counts.excused

    present_needed = required_fraction * (current_countable + remaining_sessions)
    allowed = current_effective_present + remaining_sessions - present_needed
    # Guard against 74.99999 style float noise before flooring
    return math.floor(round(allowed, 9))


def status_label(status: MarkLike) -> str:
    return STATUS_LABELS[_status_of(status)]
