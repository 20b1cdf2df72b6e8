"""
Cohort analytics: attendance, exam and graduation figures for many students at once.

Inputs are pre-grouped frames (counts per student/period/status, averages per
student/section), so the cost scales with the number of groups rather than the
length of each student's history.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from eligibility.config import Thresholds
from eligibility.models import (
    AttendanceStats,
    AttendanceStatus,
    CohortMember,
    CohortRecord,
    ExamStats,
    GraduationStatus,
    SectionAverage,
    YearLevel,
)
from eligibility.parsers import prepare_attendance_counts, prepare_exam_averages

logger = logging.getLogger(__name__)

COUNT_COLUMNS = ["present", "late", "absent", "excused"]

STATUS_COLUMNS = {
    AttendanceStatus.PRESENT.value: "present",
    AttendanceStatus.LATE.value: "late",
    AttendanceStatus.ABSENT.value: "absent",
    AttendanceStatus.EXCUSED.value: "excused",
}

YEAR_SLOTS = ["year1", "year2"]

StudentYearLevels = Union[
    Mapping[str, Union[YearLevel, str, CohortMember]],
    Iterable[CohortMember],
]


def normalize_members(student_year_levels: StudentYearLevels) -> List[CohortMember]:
    """Accept {student_id: level}, {student_id: CohortMember} or a list of CohortMember."""
    if isinstance(student_year_levels, Mapping):
        members = []
        for student_id, value in student_year_levels.items():
            if isinstance(value, CohortMember):
                members.append(value)
            else:
                members.append(CohortMember(student_id=str(student_id), year_level=YearLevel(value)))
        return members
    return list(student_year_levels)


def previous_period(active_period_id: str, period_order: Sequence[str]) -> Optional[str]:
    """The period immediately before the active one, or None if there is none."""
    order = list(period_order)
    if active_period_id not in order:
        return None
    idx = order.index(active_period_id)
    return order[idx - 1] if idx > 0 else None


def resolve_year_periods(
    members: Sequence[CohortMember],
    active_period_id: str,
    period_order: Sequence[str]
) -> pd.DataFrame:
    """
    Map each student's Year 1 / Year 2 figures onto academic periods.

    A Year 1 student's Year 1 is the active period and they have no Year 2 yet.
    A Year 2 student's Year 2 is the active period and their Year 1 is the
    period before it, unless the member carries an explicit Year 1 period.

    Returns:
        DataFrame with student_id, student_name, year_level, year1_period_id, year2_period_id
    """
    placements = pd.DataFrame(
        [
            {
                "student_id": m.student_id,
                "student_name": m.name,
                "year_level": m.year_level.value,
                "year1_override": m.year1_period_id,
            }
            for m in members
        ],
        columns=["student_id", "student_name", "year_level", "year1_override"],
    )

    is_year2 = placements["year_level"] == YearLevel.YEAR_2.value
    prior = previous_period(active_period_id, period_order)

    default_year1 = pd.Series(
        np.where(is_year2, prior, active_period_id), index=placements.index, dtype=object
    )
    placements["year1_period_id"] = placements["year1_override"].where(
        placements["year1_override"].notna(), default_year1
    )
    placements["year2_period_id"] = pd.Series(
        np.where(is_year2, active_period_id, None), index=placements.index, dtype=object
    )
    return placements.drop(columns=["year1_override"])


def pivot_attendance_counts(attendance_counts) -> pd.DataFrame:
    """One row per (student_id, period_id) with present/late/absent/excused columns."""
    counts = prepare_attendance_counts(attendance_counts)
    if counts.empty:
        return pd.DataFrame(columns=["student_id", "period_id"] + COUNT_COLUMNS)

    pivot = counts.pivot_table(
        index=["student_id", "period_id"],
        columns="status",
        values="count",
        aggfunc="sum",
        fill_value=0,
    )
    pivot = pivot.reindex(columns=list(STATUS_COLUMNS), fill_value=0).rename(columns=STATUS_COLUMNS)
    pivot.columns.name = None
    return pivot.reset_index()


def add_attendance_figures(
    df: pd.DataFrame,
    required_percentage: float
) -> pd.DataFrame:
    """
    Add effective_present, effective_total, percentage and met columns.

    Expects COUNT_COLUMNS plus total_countable_sessions. Mirrors
    attendance.stats_from_counts, operating on whole columns.
    """
    df = df.copy()
    df["effective_present"] = df["present"] + df["late"] / 2
    df["effective_total"] = df["total_countable_sessions"] - df["excused"]
    has_sessions = df["effective_total"] > 0
    safe_total = df["effective_total"].where(has_sessions, 1)
    df["percentage"] = ((df["effective_present"] / safe_total) * 100).where(has_sessions, 0.0)
    df["has_sessions"] = has_sessions
    df["met"] = df["percentage"] >= required_percentage
    return df


def _stats_from_row(row: Mapping, required_percentage: float) -> AttendanceStats:
    return AttendanceStats(
        present_count=int(row["present"]),
        late_count=int(row["late"]),
        absent_count=int(row["absent"]),
        excused_count=int(row["excused"]),
        total_countable_sessions=int(row["total_countable_sessions"]),
        effective_present=float(row["effective_present"]),
        effective_total=int(row["effective_total"]),
        percentage=float(row["percentage"]),
        met=bool(row["met"]),
        required_percentage=required_percentage,
    )


def _apply_session_totals(
    df: pd.DataFrame,
    countable_sessions: Optional[Mapping[str, int]]
) -> pd.DataFrame:
    """
    Set total_countable_sessions per row.

    Without a session mapping the student's own recorded total is the
    denominator. A mapped total smaller than what was recorded is raised to
    the recorded total so the figure stays within 0-100.
    """
    df = df.copy()
    recorded = df[COUNT_COLUMNS].sum(axis=1)
    if countable_sessions is None:
        df["total_countable_sessions"] = recorded
        return df

    mapped = pd.to_numeric(df["period_id"].map(dict(countable_sessions)), errors="coerce")
    mapped = mapped.fillna(recorded)
    short = mapped < recorded
    if short.any():
        logger.warning(
            "%d student periods have more marks than countable sessions; using recorded totals",
            int(short.sum()),
        )
    df["total_countable_sessions"] = mapped.where(~short, recorded).astype(int)
    return df


def _attendance_by_slot(
    placements: pd.DataFrame,
    pivot: pd.DataFrame,
    countable_sessions: Optional[Mapping[str, int]],
    required_percentage: float
) -> pd.DataFrame:
    """Attendance figures per (student_id, slot) where slot is year1, year2 or overall."""
    slots = placements.melt(
        id_vars=["student_id"],
        value_vars=["year1_period_id", "year2_period_id"],
        var_name="slot",
        value_name="period_id",
    )
    slots["slot"] = slots["slot"].str.replace("_period_id", "", regex=False)
    slots = slots.dropna(subset=["period_id"])

    per_period = slots.merge(pivot, on=["student_id", "period_id"], how="left")
    per_period[COUNT_COLUMNS] = per_period[COUNT_COLUMNS].fillna(0).astype(int)
    per_period = _apply_session_totals(per_period, countable_sessions)

    # A period mapped to both years is only counted once overall
    overall = (
        per_period.drop_duplicates(subset=["student_id", "period_id"])
        .groupby("student_id")[COUNT_COLUMNS + ["total_countable_sessions"]]
        .sum()
        .reindex(pd.Index(placements["student_id"].tolist(), name="student_id"), fill_value=0)
        .reset_index()
    )
    overall["slot"] = "overall"

    combined = pd.concat(
        [per_period.drop(columns=["period_id"]), overall], ignore_index=True, sort=False
    )
    return add_attendance_figures(combined, required_percentage)


def _exam_figures(
    exam_averages,
    student_ids: Sequence[str],
    thresholds: Thresholds
) -> Dict[str, ExamStats]:
    """Per-student ExamStats from per-section averages and counts."""
    exams = prepare_exam_averages(exam_averages)
    exams = exams[exams["student_id"].isin(student_ids)].copy()

    # Repeated (student, section) rows are merged count-weighted
    exams["score_sum"] = exams["average"] * exams["count"]
    sections = exams.groupby(["student_id", "section"], sort=True)[["score_sum", "count"]].sum().reset_index()
    sections["average"] = sections["score_sum"] / sections["count"]
    sections["passing_met"] = sections["average"] >= thresholds.section_minimum

    totals = sections.groupby("student_id").agg(
        score_sum=("score_sum", "sum"),
        exam_count=("count", "sum"),
        all_sections_passing=("passing_met", "all"),
    )
    totals["overall_average"] = totals["score_sum"] / totals["exam_count"]
    totals["overall_met"] = totals["overall_average"] >= thresholds.average

    section_lists: Dict[str, List[SectionAverage]] = {}
    for row in sections.to_dict(orient="records"):
        section_lists.setdefault(row["student_id"], []).append(SectionAverage(
            section=row["section"],
            average=float(row["average"]),
            count=int(row["count"]),
            passing_met=bool(row["passing_met"]),
        ))

    results = {}
    for student_id in student_ids:
        if student_id in totals.index:
            row = totals.loc[student_id]
            results[student_id] = ExamStats(
                section_averages=section_lists.get(student_id, []),
                overall_average=float(row["overall_average"]),
                overall_met=bool(row["overall_met"]),
                all_sections_passing=bool(row["all_sections_passing"]),
                required_average=thresholds.average,
                required_minimum=thresholds.section_minimum,
                exam_count=int(row["exam_count"]),
            )
        else:
            results[student_id] = ExamStats(
                section_averages=[],
                overall_average=0.0,
                overall_met=False,
                all_sections_passing=True,
                required_average=thresholds.average,
                required_minimum=thresholds.section_minimum,
                exam_count=0,
            )
    return results


def aggregate_cohort(
    attendance_counts,
    exam_averages,
    student_year_levels: StudentYearLevels,
    active_period_id: str,
    period_order: Sequence[str] = (),
    countable_sessions: Optional[Mapping[str, int]] = None,
    thresholds: Optional[Thresholds] = None
) -> Dict[str, CohortRecord]:
    """
    Compute attendance, exam and graduation figures for every student in a cohort.

    Args:
        attendance_counts: Rows of student_id, period_id, status, count
        exam_averages: Rows of student_id, section, average, count
        student_year_levels: Each student's current year level
        active_period_id: The academic period currently in session
        period_order: Period ids in chronological order
        countable_sessions: Optional countable sessions per period; defaults to
            each student's recorded total
        thresholds: Graduation requirements (defaults: 75 / 75 / 60)

    Returns:
        Dict of student_id -> CohortRecord, in cohort order. A student with no
        recorded attendance or exams is reported with None figures and is not
        penalized for them; malformed rows count as zero.
    """
    thresholds = thresholds or Thresholds()
    members = normalize_members(student_year_levels)
    if not members:
        return {}

    placements = resolve_year_periods(members, active_period_id, period_order)
    pivot = pivot_attendance_counts(attendance_counts)
    attendance = _attendance_by_slot(placements, pivot, countable_sessions, thresholds.attendance)
    student_ids = placements["student_id"].tolist()
    exams = _exam_figures(exam_averages, student_ids, thresholds)

    logger.debug(
        "Aggregating %d students over %d attendance groups (active period %s)",
        len(student_ids), len(pivot), active_period_id,
    )

    by_slot: Dict[tuple, dict] = {
        (row["student_id"], row["slot"]): row for row in attendance.to_dict(orient="records")
    }

    records: Dict[str, CohortRecord] = {}
    for placement in placements.to_dict(orient="records"):
        student_id = placement["student_id"]
        overall_row = by_slot[(student_id, "overall")]
        overall = _stats_from_row(overall_row, thresholds.attendance)

        year_stats = {}
        year_pcts = {}
        for slot in YEAR_SLOTS:
            row = by_slot.get((student_id, slot))
            year_stats[slot] = _stats_from_row(row, thresholds.attendance) if row else None
            year_pcts[slot] = float(row["percentage"]) if row and row["has_sessions"] else None

        attendance_pct = overall.percentage if overall_row["has_sessions"] else None
        attendance_met = attendance_pct is None or overall.met

        exam_stats = exams[student_id]
        exam_average = exam_stats.overall_average if exam_stats.exam_count > 0 else None
        exam_average_met = exam_average is None or exam_stats.overall_met

        records[student_id] = CohortRecord(
            student_id=student_id,
            student_name=placement["student_name"],
            year_level=YearLevel(placement["year_level"]),
            year1_period_id=placement["year1_period_id"],
            year2_period_id=placement["year2_period_id"],
            attendance=overall,
            year1_attendance=year_stats["year1"],
            year2_attendance=year_stats["year2"],
            attendance_percentage=attendance_pct,
            year1_attendance_percentage=year_pcts["year1"],
            year2_attendance_percentage=year_pcts["year2"],
            attendance_met=attendance_met,
            exams=exam_stats,
            exam_average=exam_average,
            exam_average_met=exam_average_met,
            exam_count=exam_stats.exam_count,
            graduation=GraduationStatus(
                eligible=attendance_met and exam_average_met and exam_stats.all_sections_passing,
                attendance_met=attendance_met,
                overall_average_met=exam_average_met,
                all_sections_passing=exam_stats.all_sections_passing,
            ),
        )
    return records


def cohort_frame(records: Union[Mapping[str, CohortRecord], Iterable[CohortRecord]]) -> pd.DataFrame:
    """Flatten cohort records into one table row per student."""
    if isinstance(records, Mapping):
        records = records.values()
    rows = []
    for r in records:
        rows.append({
            "student_id": r.student_id,
            "student_name": r.student_name,
            "year_level": r.year_level.value,
            "attendance_pct": r.attendance_percentage,
            "year1_attendance_pct": r.year1_attendance_percentage,
            "year2_attendance_pct": r.year2_attendance_percentage,
            "attended_sessions": r.attendance.effective_present,
            "countable_sessions": r.attendance.effective_total,
            "exam_average": r.exam_average,
            "exam_count": r.exam_count,
            "attendance_met": r.graduation.attendance_met,
            "exam_average_met": r.graduation.overall_average_met,
            "all_sections_passing": r.graduation.all_sections_passing,
            "eligible": r.graduation.eligible,
        })
    return pd.DataFrame(rows, columns=[
        "student_id", "student_name", "year_level", "attendance_pct",
        "year1_attendance_pct", "year2_attendance_pct", "attended_sessions",
        "countable_sessions", "exam_average", "exam_count", "attendance_met",
        "exam_average_met", "all_sections_passing", "eligible",
    ])


def at_risk_students(
    records: Union[Mapping[str, CohortRecord], Iterable[CohortRecord]],
    thresholds: Optional[Thresholds] = None,
    limit: Optional[int] = 10
) -> List[dict]:
    """
    Students whose recorded attendance or exam average is below requirement.

    Students with nothing recorded yet are never flagged. Sorted by number of
    issues, then by the lowest of the two figures.
    """
    thresholds = thresholds or Thresholds()
    if isinstance(records, Mapping):
        records = records.values()

    flagged = []
    for r in records:
        issues = []
        if r.attendance_percentage is not None and r.attendance_percentage < thresholds.attendance:
            issues.append(f"Low attendance: {r.attendance_percentage:.1f}%")
        if r.exam_average is not None and r.exam_average < thresholds.average:
            issues.append(f"Low exam average: {r.exam_average:.1f}%")
        if issues:
            flagged.append({
                "student_id": r.student_id,
                "student_name": r.student_name,
                "year_level": r.year_level.value,
                "attendance_rate": r.attendance_percentage,
                "exam_average": r.exam_average,
                "issues": issues,
            })

    def severity(item):
        lowest = min(
            item["attendance_rate"] if item["attendance_rate"] is not None else 100.0,
            item["exam_average"] if item["exam_average"] is not None else 100.0,
        )
        return (-len(item["issues"]), lowest)

    flagged.sort(key=severity)
    return flagged[:limit] if limit is not None else flagged


def attendance_by_period(attendance_counts, period_order: Sequence[str] = ()) -> pd.DataFrame:
    """
    Whole-cohort attendance per academic period.

    The rate uses the recorded total minus excused as denominator and is None
    for a period with nothing countable.
    """
    pivot = pivot_attendance_counts(attendance_counts)
    columns = ["period_id"] + COUNT_COLUMNS + ["total", "attendance_rate"]

    per_period = pivot.groupby("period_id")[COUNT_COLUMNS].sum()
    if period_order:
        per_period = per_period.reindex(list(period_order), fill_value=0)
    per_period = per_period.reset_index()
    if per_period.empty:
        return pd.DataFrame(columns=columns)

    per_period["total"] = per_period[COUNT_COLUMNS].sum(axis=1)
    countable = per_period["total"] - per_period["excused"]
    rate = (per_period["present"] + per_period["late"] / 2) / countable.where(countable > 0, 1) * 100
    per_period["attendance_rate"] = pd.Series(
        [float(r) if c > 0 else None for r, c in zip(rate, countable)],
        index=per_period.index,
        dtype=object,
    )
    return per_period[columns]


def weakest_sections(exam_averages, limit: Optional[int] = 3) -> pd.DataFrame:
    """Count-weighted section averages across the cohort, lowest first."""
    exams = prepare_exam_averages(exam_averages)
    if exams.empty:
        return pd.DataFrame(columns=["section", "average", "count"])

    exams["score_sum"] = exams["average"] * exams["count"]
    sections = exams.groupby("section")[["score_sum", "count"]].sum()
    sections["average"] = sections["score_sum"] / sections["count"]
    sections = sections.reset_index().sort_values(["average", "section"]).reset_index(drop=True)
    result = sections[["section", "average", "count"]]
    return result.head(limit) if limit is not None else result
