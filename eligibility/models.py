"""Data models for the Graduation Eligibility engine."""

from datetime import date, datetime
from enum import Enum
from typing import Optional, Dict, List

from pydantic import BaseModel, Field


class AttendanceStatus(str, Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    ABSENT = "ABSENT"
    EXCUSED = "EXCUSED"


class YearLevel(str, Enum):
    YEAR_1 = "YEAR_1"
    YEAR_2 = "YEAR_2"


class AsyncGrade(str, Enum):
    PRE_K = "PRE_K"
    KINDERGARTEN = "KINDERGARTEN"
    GRADE_1 = "GRADE_1"
    GRADE_2 = "GRADE_2"
    GRADE_3 = "GRADE_3"
    GRADE_4 = "GRADE_4"
    GRADE_5 = "GRADE_5"
    GRADE_6_PLUS = "GRADE_6_PLUS"


class AsyncLogStatus(str, Enum):
    VERIFIED = "VERIFIED"
    MANUAL = "MANUAL"
    EXCUSED = "EXCUSED"
    REJECTED = "REJECTED"


class AttendanceMark(BaseModel):
    """One student's recorded outcome for one countable session."""
    session_id: str
    student_id: str
    status: AttendanceStatus


class ExamScore(BaseModel):
    """One student's percentage score on one exam."""
    student_id: str
    section: str
    percentage: float
    exam_id: Optional[str] = None


class AttendanceCounts(BaseModel):
    present: int = 0
    late: int = 0
    absent: int = 0
    excused: int = 0

    @property
    def total(self) -> int:
        return self.present + self.late + self.absent + self.excused


class AttendanceStats(BaseModel):
    """Attendance figures for one student over one set of countable sessions."""
    present_count: int
    late_count: int
    absent_count: int
    excused_count: int
    total_countable_sessions: int
    effective_present: float
    effective_total: int
    percentage: float
    met: bool
    required_percentage: float


class SectionAverage(BaseModel):
    section: str
    average: float
    count: int
    passing_met: bool


class ExamStats(BaseModel):
    """Exam figures for one student."""
    section_averages: List[SectionAverage]
    overall_average: float
    overall_met: bool
    all_sections_passing: bool
    required_average: float
    required_minimum: float
    exam_count: int = 0


class GraduationStatus(BaseModel):
    eligible: bool
    attendance_met: bool
    overall_average_met: bool
    all_sections_passing: bool


class CohortMember(BaseModel):
    """A student's placement in the program, as handed to the cohort aggregator."""
    student_id: str
    year_level: YearLevel
    name: Optional[str] = None
    year1_period_id: Optional[str] = None


class CohortRecord(BaseModel):
    """
    One row of cohort analytics.

    Percentages and the exam average are None when the student has nothing
    recorded yet; the matching *_met flags are then True (not yet failed).
    """
    student_id: str
    student_name: Optional[str] = None
    year_level: YearLevel
    year1_period_id: Optional[str] = None
    year2_period_id: Optional[str] = None
    attendance: AttendanceStats
    year1_attendance: Optional[AttendanceStats] = None
    year2_attendance: Optional[AttendanceStats] = None
    attendance_percentage: Optional[float] = None
    year1_attendance_percentage: Optional[float] = None
    year2_attendance_percentage: Optional[float] = None
    attendance_met: bool
    exams: ExamStats
    exam_average: Optional[float] = None
    exam_average_met: bool
    exam_count: int
    graduation: GraduationStatus


class AsyncAssignment(BaseModel):
    """A student's enrolment in asynchronous attendance for one grade."""
    id: str
    student_id: str
    grade: AsyncGrade
    start_date: date
    total_weeks: int = Field(gt=0)
    is_active: bool = True


class AsyncCode(BaseModel):
    id: str
    code: str
    grade: AsyncGrade
    week_of: date
    valid_until: datetime
    is_active: bool = True
    generated_by: Optional[str] = None
    created_at: Optional[datetime] = None


class AsyncLog(BaseModel):
    id: str
    assignment_id: str
    week_number: int
    week_of: date
    status: AsyncLogStatus
    code_id: Optional[str] = None
    marked_by: Optional[str] = None
    notes: Optional[str] = None
    student_notes: Optional[str] = None


# Request/response bodies for the HTTP surface

class AttendanceEvaluationRequest(BaseModel):
    marks: List[AttendanceMark]
    countable_session_count: int
    required_percentage: Optional[float] = None


class ExamEvaluationRequest(BaseModel):
    scores: List[ExamScore]
    required_average: Optional[float] = None
    required_minimum: Optional[float] = None


class GraduationEvaluationRequest(BaseModel):
    attendance: AttendanceStats
    exams: ExamStats


class StudentEvaluationRequest(BaseModel):
    marks: List[AttendanceMark]
    countable_session_count: int
    scores: List[ExamScore]


class StudentEvaluationResponse(BaseModel):
    attendance: AttendanceStats
    exams: ExamStats
    graduation: GraduationStatus


class AttendanceCountRow(BaseModel):
    student_id: Optional[str] = None
    period_id: Optional[str] = None
    status: Optional[str] = None
    count: Optional[float] = None


class ExamAverageRow(BaseModel):
    student_id: Optional[str] = None
    section: Optional[str] = None
    average: Optional[float] = None
    count: Optional[float] = None


class CohortRequest(BaseModel):
    attendance_counts: List[AttendanceCountRow] = []
    exam_averages: List[ExamAverageRow] = []
    students: List[CohortMember]
    active_period_id: str
    period_order: List[str] = []
    countable_sessions: Optional[Dict[str, int]] = None


class CohortResponse(BaseModel):
    success: bool
    message: str
    results: List[CohortRecord]
    summary: Dict[str, int]


class IssueCodeRequest(BaseModel):
    grade: AsyncGrade
    week_of: str
    validity_days: Optional[int] = None
    issued_by: Optional[str] = None


class GenerateCodesRequest(BaseModel):
    week_of: str
    issued_by: Optional[str] = None


class GenerateCodesResponse(BaseModel):
    message: str
    generated: List[AsyncCode]


class RedeemCodeRequest(BaseModel):
    assignment_id: str
    code: str
    week_of: str
    student_notes: Optional[str] = None


class AdminActionRequest(BaseModel):
    assignment_id: str
    week_number: int
    status: AsyncLogStatus
    notes: Optional[str] = None
    marked_by: Optional[str] = None


class AsyncProgressResponse(BaseModel):
    assignment: AsyncAssignment
    logs: List[AsyncLog]
    attendance: AttendanceStats
