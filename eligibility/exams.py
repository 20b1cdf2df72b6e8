"""Exam score aggregation and pass/fail evaluation."""

from typing import Dict, Iterable, List

from eligibility.models import ExamScore, ExamStats, SectionAverage

DEFAULT_REQUIRED_AVERAGE = 75.0
DEFAULT_REQUIRED_MINIMUM = 60.0


def evaluate_exams(
    scores: Iterable[ExamScore],
    required_average: float = DEFAULT_REQUIRED_AVERAGE,
    required_minimum: float = DEFAULT_REQUIRED_MINIMUM
) -> ExamStats:
    """
    Average exam scores per section and overall.

    Args:
        scores: ExamScore objects with a percentage and a section name
        required_average: Minimum overall average (default: 75)
        required_minimum: Minimum per-section average (default: 60)

    Returns:
        ExamStats. With no scores the overall average is 0 (not met) while
        all_sections_passing is True, since no section has been failed yet.
    """
    if required_average < 0 or required_minimum < 0:
        raise ValueError(
            f"Exam thresholds cannot be negative: average={required_average}, minimum={required_minimum}"
        )

    scores_by_section: Dict[str, List[float]] = {}
    for score in scores:
        if not 0 <= score.percentage <= 100:
            raise ValueError(f"Exam percentage out of range for {score.student_id}: {score.percentage}")
        scores_by_section.setdefault(score.section, []).append(score.percentage)

    section_averages = []
    for section, section_scores in scores_by_section.items():
        average = sum(section_scores) / len(section_scores)
        section_averages.append(SectionAverage(
            section=section,
            average=average,
            count=len(section_scores),
            passing_met=average >= required_minimum,
        ))

    all_scores = [s for section_scores in scores_by_section.values() for s in section_scores]
    overall_average = sum(all_scores) / len(all_scores) if all_scores else 0.0

    return ExamStats(
        section_averages=section_averages,
        overall_average=overall_average,
        overall_met=overall_average >= required_average,
        all_sections_passing=all(s.passing_met for s in section_averages),
        required_average=required_average,
        required_minimum=required_minimum,
        exam_count=len(all_scores),
    )
