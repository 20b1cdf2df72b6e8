"""FastAPI application for the Graduation Eligibility engine."""

import csv
import logging
import traceback
from datetime import datetime, timedelta
from io import StringIO
from typing import Dict, List

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from eligibility.async_codes import (
    AsyncAttendanceError,
    AsyncAttendanceProtocol,
    DuplicateAssignmentError,
    InMemoryAsyncStore,
    RefusalReason,
)
from eligibility.attendance import evaluate_attendance
from eligibility.cohort import aggregate_cohort, at_risk_students, cohort_frame
from eligibility.config import ALLOW_ORIGINS, DEBUG, LOG_LEVEL, THRESHOLDS
from eligibility.exams import evaluate_exams
from eligibility.graduation import evaluate_graduation, evaluate_student
from eligibility.models import (
    AdminActionRequest,
    AsyncAssignment,
    AsyncCode,
    AsyncLog,
    AsyncProgressResponse,
    AttendanceEvaluationRequest,
    AttendanceStats,
    CohortRecord,
    CohortRequest,
    CohortResponse,
    ExamEvaluationRequest,
    ExamStats,
    GenerateCodesRequest,
    GenerateCodesResponse,
    GraduationEvaluationRequest,
    GraduationStatus,
    IssueCodeRequest,
    RedeemCodeRequest,
    StudentEvaluationRequest,
    StudentEvaluationResponse,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Graduation Eligibility", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

REFUSAL_STATUS_CODES = {
    RefusalReason.CODE_NOT_FOUND: 404,
    RefusalReason.CODE_INACTIVE: 410,
    RefusalReason.CODE_EXPIRED: 410,
    RefusalReason.GRADE_MISMATCH: 422,
    RefusalReason.ALREADY_LOGGED: 409,
    RefusalReason.CODE_EXISTS: 409,
    RefusalReason.ASSIGNMENT_INACTIVE: 404,
}

# In-memory state for the process; durable storage lives behind AsyncAttendanceStore
store = InMemoryAsyncStore()
protocol = AsyncAttendanceProtocol(store)
results_cache: Dict[str, List[CohortRecord]] = {}


# Override default exception handlers to return JSON (register specific handlers first)
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler_json(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler_json(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(AsyncAttendanceError)
async def refusal_handler_json(request: Request, exc: AsyncAttendanceError):
    """Business-rule refusals carry a stable reason next to the message."""
    return JSONResponse(
        status_code=REFUSAL_STATUS_CODES.get(exc.reason, 400),
        content={"detail": exc.message, "reason": exc.reason.value},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions and return JSON."""
    logger.exception("Unhandled error on %s", request.url.path)
    error_detail = str(exc)
    if DEBUG:
        error_detail = f"{str(exc)}\n\n{traceback.format_exc()}"
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {error_detail}", "type": type(exc).__name__},
    )


def get_assignment_or_404(assignment_id: str) -> AsyncAssignment:
    assignment = store.get_assignment(assignment_id)
    if not assignment:
        raise HTTPException(status_code=404, detail="Assignment not found")
    return assignment


@app.get("/health")
async def health_check():
    return JSONResponse(content={"status": "ok", "message": "Server is running"})


# ----- evaluators -----

@app.post("/attendance/evaluate", response_model=AttendanceStats)
async def evaluate_attendance_endpoint(request: AttendanceEvaluationRequest):
    required = request.required_percentage
    if required is None:
        required = THRESHOLDS.attendance
    try:
        return evaluate_attendance(request.marks, request.countable_session_count, required)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/exams/evaluate", response_model=ExamStats)
async def evaluate_exams_endpoint(request: ExamEvaluationRequest):
    required_average = request.required_average
    if required_average is None:
        required_average = THRESHOLDS.average
    required_minimum = request.required_minimum
    if required_minimum is None:
        required_minimum = THRESHOLDS.section_minimum
    try:
        return evaluate_exams(request.scores, required_average, required_minimum)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/graduation/evaluate", response_model=GraduationStatus)
async def evaluate_graduation_endpoint(request: GraduationEvaluationRequest):
    return evaluate_graduation(request.attendance, request.exams)


@app.post("/students/evaluate", response_model=StudentEvaluationResponse)
async def evaluate_student_endpoint(request: StudentEvaluationRequest):
    try:
        return evaluate_student(request.marks, request.countable_session_count, request.scores, THRESHOLDS)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ----- cohort -----

@app.post("/cohort/aggregate", response_model=CohortResponse)
async def aggregate_cohort_endpoint(request: CohortRequest):
    """Compute figures for a whole cohort and keep them for the download endpoints."""
    attendance_counts = pd.DataFrame([row.model_dump() for row in request.attendance_counts])
    exam_averages = pd.DataFrame([row.model_dump() for row in request.exam_averages])

    records = aggregate_cohort(
        attendance_counts,
        exam_averages,
        request.students,
        request.active_period_id,
        request.period_order,
        countable_sessions=request.countable_sessions,
        thresholds=THRESHOLDS,
    )
    results = list(records.values())

    session_id = datetime.now().isoformat()
    results_cache[session_id] = results

    summary = {
        'Eligible': sum(1 for r in results if r.graduation.eligible),
        'Not Eligible': sum(1 for r in results if not r.graduation.eligible),
        'Attendance Not Met': sum(1 for r in results if not r.graduation.attendance_met),
        'Exam Average Not Met': sum(1 for r in results if not r.graduation.overall_average_met),
        'Section Below Minimum': sum(1 for r in results if not r.graduation.all_sections_passing),
        'Total': len(results),
    }
    logger.info(
        "Cohort %s: %d students (%d eligible)", request.active_period_id, summary['Total'], summary['Eligible']
    )

    return CohortResponse(
        success=True,
        message=f"Successfully processed {len(results)} students",
        results=results,
        summary=summary,
    )


def latest_results() -> List[CohortRecord]:
    if not results_cache:
        raise HTTPException(status_code=404, detail="No results available")
    return results_cache[max(results_cache.keys())]


@app.get("/cohort/at-risk")
async def get_at_risk(limit: int = Query(10, ge=0)):
    results = latest_results()
    flagged = at_risk_students(results, THRESHOLDS, limit=None)
    return {'at_risk': flagged[:limit], 'total_at_risk': len(flagged)}


@app.get("/cohort/download.csv")
async def download_csv():
    """Download the last cohort results as CSV."""
    latest_session = max(results_cache.keys()) if results_cache else None
    frame = cohort_frame(latest_results())

    def fmt(value):
        return "" if value is None or pd.isna(value) else f"{value:.2f}"

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow([
        'Student ID',
        'Student Name',
        'Year Level',
        'Attendance %',
        'Year 1 Attendance %',
        'Year 2 Attendance %',
        'Exam Average',
        'Exams',
        'Eligible',
    ])
    for row in frame.to_dict(orient="records"):
        writer.writerow([
            row['student_id'],
            row['student_name'] or '',
            row['year_level'],
            fmt(row['attendance_pct']),
            fmt(row['year1_attendance_pct']),
            fmt(row['year2_attendance_pct']),
            fmt(row['exam_average']),
            row['exam_count'],
            'Yes' if row['eligible'] else 'No',
        ])
    output.seek(0)

    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=graduation_eligibility_{latest_session[:10]}.csv"
        },
    )


# ----- async attendance -----

@app.post("/async/assignments", response_model=AsyncAssignment, status_code=201)
async def create_assignment(assignment: AsyncAssignment):
    try:
        return store.add_assignment(assignment)
    except DuplicateAssignmentError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/async/assignments/{assignment_id}/progress", response_model=AsyncProgressResponse)
async def assignment_progress(assignment_id: str):
    assignment = get_assignment_or_404(assignment_id)
    return AsyncProgressResponse(
        assignment=assignment,
        logs=store.list_logs(assignment_id),
        attendance=protocol.progress(assignment, THRESHOLDS.attendance),
    )


@app.post("/async/codes", response_model=AsyncCode, status_code=201)
async def issue_code(request: IssueCodeRequest):
    validity = timedelta(days=request.validity_days) if request.validity_days is not None else None
    return protocol.issue_code(request.grade, request.week_of, validity, request.issued_by)


@app.post("/async/codes/generate", response_model=GenerateCodesResponse, status_code=201)
async def generate_week_codes(request: GenerateCodesRequest):
    generated = protocol.issue_week_codes(request.week_of, request.issued_by)
    if not generated:
        return GenerateCodesResponse(message="All grades already have codes for this week", generated=[])
    return GenerateCodesResponse(message=f"Generated codes for {len(generated)} grade(s)", generated=generated)


@app.get("/async/codes/current", response_model=List[AsyncCode])
async def get_current_codes():
    return protocol.current_codes()


@app.post("/async/codes/{code}/deactivate", response_model=AsyncCode)
async def deactivate_code(code: str):
    return protocol.deactivate_code(code)


@app.post("/async/logs", response_model=AsyncLog, status_code=201)
async def redeem_code(request: RedeemCodeRequest):
    assignment = get_assignment_or_404(request.assignment_id)
    return protocol.redeem_code(request.code, assignment, request.week_of, request.student_notes)


@app.post("/async/logs/admin-action", response_model=AsyncLog)
async def admin_action(request: AdminActionRequest):
    assignment = get_assignment_or_404(request.assignment_id)
    return protocol.apply_admin_action(
        assignment, request.week_number, request.status, request.notes, request.marked_by
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
