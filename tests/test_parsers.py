"""Unit tests for parsers module."""

from datetime import date, datetime

import numpy as np
import pandas as pd
import pytest

from eligibility.models import AttendanceStatus, ExamScore
from eligibility.parsers import (
    clean_student_id,
    group_attendance_marks,
    group_exam_scores,
    normalize_percentage,
    normalize_status,
    parse_week_of,
    prepare_attendance_counts,
    prepare_exam_averages,
)


def test_normalize_status():
    assert normalize_status("present") == "PRESENT"
    assert normalize_status(" Late ") == "LATE"
    assert normalize_status(AttendanceStatus.EXCUSED) == "EXCUSED"
    assert normalize_status("HOLIDAY") is None
    assert normalize_status(None) is None
    assert normalize_status(np.nan) is None


def test_normalize_percentage():
    assert normalize_percentage(45, 50) == pytest.approx(90.0)
    assert normalize_percentage(0, 20) == 0.0
    assert normalize_percentage(None, 20) == 0.0
    assert normalize_percentage(pd.NA, 20) == 0.0
    with pytest.raises(ValueError):
        normalize_percentage(10, 0)


def test_prepare_attendance_counts_drops_malformed_rows():
    df = pd.DataFrame({
        'student_id': ['s1', 's1', None, 's2', '  ', 's3'],
        'period_id': ['p1', 'p1', 'p1', 'p1', 'p1', 'p1'],
        'status': ['PRESENT', 'late', 'PRESENT', 'HOLIDAY', 'ABSENT', 'ABSENT'],
        'count': [5, 'abc', 3, 2, 1, -4],
    })

    cleaned = prepare_attendance_counts(df)

    assert list(cleaned.columns) == ['student_id', 'period_id', 'status', 'count']
    assert len(cleaned) == 3
    assert cleaned['student_id'].tolist() == ['s1', 's1', 's3']
    assert cleaned['status'].tolist() == ['PRESENT', 'LATE', 'ABSENT']
    # Non-numeric and negative counts are zero
    assert cleaned['count'].tolist() == [5, 0, 0]


def test_prepare_attendance_counts_missing_columns():
    cleaned = prepare_attendance_counts([{'student_id': 's1', 'status': 'PRESENT'}])
    assert len(cleaned) == 1
    assert cleaned['count'].iloc[0] == 0


def test_prepare_exam_averages():
    df = pd.DataFrame({
        'student_id': ['s1', 's1', 's2', None],
        'section': ['Bible', None, 'Dogma', 'Bible'],
        'average': [80.0, 70.0, 'n/a', 90.0],
        'count': [2, 1, 1, 1],
    })

    cleaned = prepare_exam_averages(df)

    assert cleaned['student_id'].tolist() == ['s1', 's2']
    assert cleaned['average'].tolist() == [80.0, 0.0]


def test_group_attendance_marks():
    rows = [
        {'student_id': 's1', 'period_id': 'p1', 'status': 'PRESENT'},
        {'student_id': 's1', 'period_id': 'p1', 'status': 'PRESENT'},
        {'student_id': 's1', 'period_id': 'p1', 'status': 'LATE'},
        {'student_id': 's2', 'period_id': 'p1', 'status': 'ABSENT'},
        {'student_id': 's1', 'period_id': 'p0', 'status': 'EXCUSED'},
    ]

    grouped = group_attendance_marks(rows)

    assert list(grouped.columns) == ['student_id', 'period_id', 'status', 'count']
    assert len(grouped) == 4
    present = grouped[(grouped['student_id'] == 's1') & (grouped['status'] == 'PRESENT')]
    assert present['count'].iloc[0] == 2


def test_group_exam_scores():
    scores = [
        ExamScore(student_id='s1', section='Bible', percentage=80),
        ExamScore(student_id='s1', section='Bible', percentage=90),
        ExamScore(student_id='s1', section='Dogma', percentage=70),
    ]

    grouped = group_exam_scores(scores)

    bible = grouped[grouped['section'] == 'Bible'].iloc[0]
    assert bible['average'] == 85.0
    assert bible['count'] == 2
    assert len(grouped) == 2


def test_group_empty_inputs():
    assert group_attendance_marks([]).empty
    assert group_exam_scores([]).empty


def test_parse_week_of():
    assert parse_week_of('2025-10-19') == date(2025, 10, 19)
    assert parse_week_of('2025-10-19T15:30:00') == date(2025, 10, 19)
    assert parse_week_of(datetime(2025, 10, 19, 23, 59)) == date(2025, 10, 19)
    assert parse_week_of(date(2025, 10, 19)) == date(2025, 10, 19)

    with pytest.raises(ValueError):
        parse_week_of('not-a-date')
    with pytest.raises(ValueError):
        parse_week_of('')
    with pytest.raises(ValueError):
        parse_week_of(None)


def test_clean_student_id_restores_widened_integers():
    series = pd.Series([101, None, 102]).astype(float)
    assert clean_student_id(series).tolist() == ['101', None, '102']
    assert clean_student_id(pd.Series([' s1 ', 12.5, ''])).tolist() == ['s1', '12.5', None]
