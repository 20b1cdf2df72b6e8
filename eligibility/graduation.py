"""Graduation eligibility: attendance and exam verdicts combined."""

from typing import Iterable, Optional

from eligibility.attendance import MarkLike, evaluate_attendance
from eligibility.config import Thresholds
from eligibility.exams import evaluate_exams
from eligibility.models import AttendanceStats, ExamScore, ExamStats, GraduationStatus, StudentEvaluationResponse


def evaluate_graduation(attendance_stats: AttendanceStats, exam_stats: ExamStats) -> GraduationStatus:
    """A student is eligible when attendance, overall average and every section pass."""
    return GraduationStatus(
        eligible=attendance_stats.met and exam_stats.overall_met and exam_stats.all_sections_passing,
        attendance_met=attendance_stats.met,
        overall_average_met=exam_stats.overall_met,
        all_sections_passing=exam_stats.all_sections_passing,
    )


def evaluate_student(
    marks: Iterable[MarkLike],
    countable_session_count: int,
    scores: Iterable[ExamScore],
    thresholds: Optional[Thresholds] = None
) -> StudentEvaluationResponse:
    """Run all three evaluators for one student."""
    thresholds = thresholds or Thresholds()
    attendance = evaluate_attendance(marks, countable_session_count, thresholds.attendance)
    exams = evaluate_exams(scores, thresholds.average, thresholds.section_minimum)
    return StudentEvaluationResponse(
        attendance=attendance,
        exams=exams,
        graduation=evaluate_graduation(attendance, exams),
    )
