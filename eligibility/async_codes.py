"""
Asynchronous attendance: weekly codes, code redemption and the weekly log.

Students who cannot attend in person redeem a short-lived code issued for
their grade each week. Every (assignment, week number) has at most one log
row, whose status moves as follows:

    (none)    --redeem-->        VERIFIED
    REJECTED  --redeem-->        VERIFIED  (resubmission, clears staff fields)
    any/none  --staff action-->  MANUAL | EXCUSED | REJECTED
"""

import logging
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from eligibility.attendance import evaluate_attendance
from eligibility.config import CODE_VALIDITY_DAYS, THRESHOLDS
from eligibility.models import (
    AsyncAssignment,
    AsyncCode,
    AsyncGrade,
    AsyncLog,
    AsyncLogStatus,
    AttendanceStats,
    AttendanceStatus,
)
from eligibility.parsers import parse_week_of

logger = logging.getLogger(__name__)

GRADE_PREFIXES: Dict[AsyncGrade, str] = {
    AsyncGrade.PRE_K: 'PK',
    AsyncGrade.KINDERGARTEN: 'KG',
    AsyncGrade.GRADE_1: 'G1',
    AsyncGrade.GRADE_2: 'G2',
    AsyncGrade.GRADE_3: 'G3',
    AsyncGrade.GRADE_4: 'G4',
    AsyncGrade.GRADE_5: 'G5',
    AsyncGrade.GRADE_6_PLUS: 'G6',
}

GRADE_DISPLAY_NAMES: Dict[AsyncGrade, str] = {
    AsyncGrade.PRE_K: 'Pre-K',
    AsyncGrade.KINDERGARTEN: 'Kindergarten',
    AsyncGrade.GRADE_1: '1st Grade',
    AsyncGrade.GRADE_2: '2nd Grade',
    AsyncGrade.GRADE_3: '3rd Grade',
    AsyncGrade.GRADE_4: '4th Grade',
    AsyncGrade.GRADE_5: '5th Grade',
    AsyncGrade.GRADE_6_PLUS: '6th Grade+',
}

# No 0/O or 1/I/L
CODE_ALPHABET = 'ABCDEFGHJKMNPQRSTUVWXYZ23456789'
CODE_LENGTH = 4
MAX_CODE_ATTEMPTS = 20

STAFF_STATUSES = (AsyncLogStatus.MANUAL, AsyncLogStatus.EXCUSED, AsyncLogStatus.REJECTED)

# How each log status counts towards attendance
LOG_STATUS_MARKS: Dict[AsyncLogStatus, AttendanceStatus] = {
    AsyncLogStatus.VERIFIED: AttendanceStatus.PRESENT,
    AsyncLogStatus.MANUAL: AttendanceStatus.PRESENT,
    AsyncLogStatus.EXCUSED: AttendanceStatus.EXCUSED,
    AsyncLogStatus.REJECTED: AttendanceStatus.ABSENT,
}


class RefusalReason(str, Enum):
    INVALID_DATE = "invalid_date"
    ASSIGNMENT_INACTIVE = "assignment_inactive"
    WEEK_OUT_OF_RANGE = "week_out_of_range"
    CODE_NOT_FOUND = "code_not_found"
    CODE_INACTIVE = "code_inactive"
    CODE_EXPIRED = "code_expired"
    GRADE_MISMATCH = "grade_mismatch"
    ALREADY_LOGGED = "already_logged"
    CODE_EXISTS = "code_exists"
    INVALID_STATUS = "invalid_status"


class AsyncAttendanceError(ValueError):
    """A business rule refused the request; `reason` is stable, `message` is for people."""

    def __init__(self, reason: RefusalReason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class DuplicateLogError(Exception):
    """The store already holds a log for this (assignment, week number)."""


class LogStatusConflictError(Exception):
    """The stored log no longer has the status the caller read before updating it."""


class DuplicateAssignmentError(Exception):
    """The store already holds an assignment with this id."""


class DuplicateCodeError(Exception):
    """The store already holds this code string, or an active code for this grade and week."""

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


# ============================================
# Code and week helpers
# ============================================

def generate_code(grade: AsyncGrade) -> str:
    """Random code such as 'G3-K7QM'."""
    random_part = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{GRADE_PREFIXES[AsyncGrade(grade)]}-{random_part}"


def normalize_code(code: str) -> str:
    return (code or '').strip().upper()


def parse_code_prefix(code: str) -> Optional[AsyncGrade]:
    prefix = normalize_code(code).split('-')[0]
    for grade, p in GRADE_PREFIXES.items():
        if p == prefix:
            return grade
    return None


def week_start(day: Union[date, datetime, str, None] = None) -> date:
    """The Sunday on or before the given day (today by default)."""
    day = parse_week_of(day) if day is not None else date.today()
    return day - timedelta(days=(day.weekday() + 1) % 7)


def code_valid_until(week_of: Union[date, str], days: int = CODE_VALIDITY_DAYS) -> datetime:
    """End of the day `days` after the week starts."""
    return datetime.combine(parse_week_of(week_of) + timedelta(days=days), time.max)


def week_number(
    start_date: Union[date, datetime, str],
    week_of: Union[date, datetime, str],
    total_weeks: Optional[int] = None
) -> Optional[int]:
    """
    1-based week of an assignment that `week_of` falls in.

    Both dates are reduced to calendar days first. Returns None before the
    start, or after the last week when total_weeks is given.
    """
    days = (parse_week_of(week_of) - parse_week_of(start_date)).days
    number = days // 7 + 1
    if number < 1:
        return None
    if total_weeks is not None and number > total_weeks:
        return None
    return number


def week_of_number(start_date: Union[date, str], number: int) -> date:
    return parse_week_of(start_date) + timedelta(days=(number - 1) * 7)


def assignment_weeks(start_date: Union[date, str], total_weeks: int) -> List[Dict]:
    return [
        {'week_number': n, 'week_of': week_of_number(start_date, n)}
        for n in range(1, total_weeks + 1)
    ]


def async_logs_as_marks(logs: Iterable[AsyncLog]) -> List[AttendanceStatus]:
    """VERIFIED and MANUAL count as present, EXCUSED as excused, REJECTED as absent."""
    return [LOG_STATUS_MARKS[AsyncLogStatus(log.status)] for log in logs]


def evaluate_async_attendance(
    logs: Iterable[AsyncLog],
    total_weeks: int,
    required_percentage: float = THRESHOLDS.attendance
) -> AttendanceStats:
    """Attendance over an assignment's weeks; weeks with no log count as absent."""
    return evaluate_attendance(async_logs_as_marks(logs), total_weeks, required_percentage)


# ============================================
# Storage boundary
# ============================================

class AsyncAttendanceStore(ABC):
    """
    Storage for assignments, codes and logs.

    Implementations must enforce uniqueness of assignment ids, of code strings,
    of active codes per (grade, week_of) and of logs per (assignment_id,
    week_number), raising DuplicateAssignmentError / DuplicateCodeError /
    DuplicateLogError on insert. save_log with expected_status is a
    compare-and-set and raises LogStatusConflictError when the stored status
    differs.
    """

    @abstractmethod
    def add_assignment(self, assignment: AsyncAssignment) -> AsyncAssignment:
        pass

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[AsyncAssignment]:
        pass

    @abstractmethod
    def add_code(self, code: AsyncCode) -> AsyncCode:
        pass

    @abstractmethod
    def save_code(self, code: AsyncCode) -> AsyncCode:
        pass

    @abstractmethod
    def get_code(self, code: str) -> Optional[AsyncCode]:
        pass

    @abstractmethod
    def find_active_code(self, grade: AsyncGrade, week_of: date) -> Optional[AsyncCode]:
        pass

    @abstractmethod
    def list_codes(self) -> List[AsyncCode]:
        pass

    @abstractmethod
    def add_log(self, log: AsyncLog) -> AsyncLog:
        pass

    @abstractmethod
    def save_log(self, log: AsyncLog, expected_status: Optional[AsyncLogStatus] = None) -> AsyncLog:
        pass

    @abstractmethod
    def get_log(self, assignment_id: str, week_number: int) -> Optional[AsyncLog]:
        pass

    @abstractmethod
    def list_logs(self, assignment_id: str) -> List[AsyncLog]:
        pass


class InMemoryAsyncStore(AsyncAttendanceStore):
    """Process-local store; a lock makes each insert check-and-set atomic."""

    def __init__(self):
        self._lock = threading.Lock()
        self._assignments: Dict[str, AsyncAssignment] = {}
        self._codes: Dict[str, AsyncCode] = {}
        self._logs: Dict[Tuple[str, int], AsyncLog] = {}

    def add_assignment(self, assignment: AsyncAssignment) -> AsyncAssignment:
        with self._lock:
            if assignment.id in self._assignments:
                raise DuplicateAssignmentError(f"Assignment {assignment.id} already exists")
            self._assignments[assignment.id] = assignment.model_copy()
        return assignment

    def get_assignment(self, assignment_id: str) -> Optional[AsyncAssignment]:
        found = self._assignments.get(assignment_id)
        return found.model_copy() if found else None

    def add_code(self, code: AsyncCode) -> AsyncCode:
        with self._lock:
            if code.code in self._codes:
                raise DuplicateCodeError(f"Code {code.code} already exists", field='code')
            if code.is_active and self._active_code(code.grade, code.week_of):
                raise DuplicateCodeError(
                    f"An active code already exists for {code.grade.value} week of {code.week_of}",
                    field='grade_week',
                )
            self._codes[code.code] = code.model_copy()
        return code

    def save_code(self, code: AsyncCode) -> AsyncCode:
        with self._lock:
            self._codes[code.code] = code.model_copy()
        return code

    def get_code(self, code: str) -> Optional[AsyncCode]:
        found = self._codes.get(code)
        return found.model_copy() if found else None

    def _active_code(self, grade: AsyncGrade, week_of: date) -> Optional[AsyncCode]:
        for code in self._codes.values():
            if code.is_active and code.grade == grade and code.week_of == week_of:
                return code
        return None

    def find_active_code(self, grade: AsyncGrade, week_of: date) -> Optional[AsyncCode]:
        found = self._active_code(grade, week_of)
        return found.model_copy() if found else None

    def list_codes(self) -> List[AsyncCode]:
        return [c.model_copy() for c in self._codes.values()]

    def add_log(self, log: AsyncLog) -> AsyncLog:
        key = (log.assignment_id, log.week_number)
        with self._lock:
            if key in self._logs:
                raise DuplicateLogError(f"Log already exists for assignment {key[0]} week {key[1]}")
            self._logs[key] = log.model_copy()
        return log

    def save_log(self, log: AsyncLog, expected_status: Optional[AsyncLogStatus] = None) -> AsyncLog:
        key = (log.assignment_id, log.week_number)
        with self._lock:
            if expected_status is not None:
                current = self._logs.get(key)
                if current is None or current.status != expected_status:
                    raise LogStatusConflictError(
                        f"Log for assignment {key[0]} week {key[1]} is no longer {expected_status.value}"
                    )
            self._logs[key] = log.model_copy()
        return log

    def get_log(self, assignment_id: str, week_number: int) -> Optional[AsyncLog]:
        found = self._logs.get((assignment_id, week_number))
        return found.model_copy() if found else None

    def list_logs(self, assignment_id: str) -> List[AsyncLog]:
        logs = [log for (a_id, _), log in self._logs.items() if a_id == assignment_id]
        return [log.model_copy() for log in sorted(logs, key=lambda l: l.week_number)]


# ============================================
# Protocol
# ============================================

def _new_id() -> str:
    return uuid.uuid4().hex


class AsyncAttendanceProtocol:
    """Code issuance, redemption and staff actions over an AsyncAttendanceStore."""

    def __init__(self, store: AsyncAttendanceStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    # ----- codes -----

    def issue_code(
        self,
        grade: AsyncGrade,
        week_of: Union[date, str],
        validity: Optional[timedelta] = None,
        issued_by: Optional[str] = None
    ) -> AsyncCode:
        """
        Issue the code for one grade and week.

        Raises:
            AsyncAttendanceError: CODE_EXISTS if an active code already covers
                this grade and week, INVALID_DATE for an unparsable week
        """
        grade = AsyncGrade(grade)
        week_day = self._parse_week(week_of)

        if self.store.find_active_code(grade, week_day):
            raise AsyncAttendanceError(
                RefusalReason.CODE_EXISTS,
                f"An active code already exists for {GRADE_DISPLAY_NAMES[grade]} for the week of {week_day}",
            )

        if validity is None:
            valid_until = code_valid_until(week_day)
        else:
            valid_until = datetime.combine(week_day, time.min) + validity

        for _ in range(MAX_CODE_ATTEMPTS):
            code = AsyncCode(
                id=_new_id(),
                code=generate_code(grade),
                grade=grade,
                week_of=week_day,
                valid_until=valid_until,
                is_active=True,
                generated_by=issued_by,
                created_at=self.clock(),
            )
            try:
                self.store.add_code(code)
            except DuplicateCodeError as e:
                if e.field == 'grade_week':
                    raise AsyncAttendanceError(RefusalReason.CODE_EXISTS, str(e)) from e
                logger.debug("Code collision on %s, generating another", code.code)
                continue
            logger.info("Issued code %s for %s week of %s", code.code, grade.value, week_day)
            return code

        raise RuntimeError(f"Could not generate a unique code after {MAX_CODE_ATTEMPTS} attempts")

    def issue_week_codes(self, week_of: Union[date, str], issued_by: Optional[str] = None) -> List[AsyncCode]:
        """Issue codes for every grade that does not have one for this week yet."""
        week_day = self._parse_week(week_of)
        generated = []
        for grade in AsyncGrade:
            if self.store.find_active_code(grade, week_day):
                continue
            try:
                generated.append(self.issue_code(grade, week_day, issued_by=issued_by))
            except AsyncAttendanceError as e:
                # Another request issued this grade's code in the meantime
                if e.reason != RefusalReason.CODE_EXISTS:
                    raise
        return generated

    def deactivate_code(self, code: str) -> AsyncCode:
        found = self.store.get_code(normalize_code(code))
        if not found:
            raise AsyncAttendanceError(RefusalReason.CODE_NOT_FOUND, "Invalid attendance code")
        updated = found.model_copy(update={'is_active': False})
        self.store.save_code(updated)
        logger.info("Deactivated code %s", updated.code)
        return updated

    def current_codes(self, now: Optional[datetime] = None) -> List[AsyncCode]:
        """Active codes that have not expired, newest week first."""
        now = now or self.clock()
        codes = [c for c in self.store.list_codes() if c.is_active and now <= c.valid_until]
        return sorted(codes, key=lambda c: (c.week_of, c.grade.value), reverse=True)

    # ----- logs -----

    def redeem_code(
        self,
        code: str,
        assignment: AsyncAssignment,
        target_week: Union[date, datetime, str],
        student_notes: Optional[str] = None
    ) -> AsyncLog:
        """
        Turn a student's code into a VERIFIED log for the target week.

        Raises:
            AsyncAttendanceError: with one of INVALID_DATE, ASSIGNMENT_INACTIVE,
                WEEK_OUT_OF_RANGE, CODE_NOT_FOUND, CODE_INACTIVE, CODE_EXPIRED,
                GRADE_MISMATCH or ALREADY_LOGGED
        """
        week_day = self._parse_week(target_week)

        if not assignment.is_active:
            raise AsyncAttendanceError(
                RefusalReason.ASSIGNMENT_INACTIVE, "No active async attendance assignment found"
            )

        start = assignment.start_date
        end = start + timedelta(days=assignment.total_weeks * 7)
        if week_day < start or week_day >= end:
            raise AsyncAttendanceError(
                RefusalReason.WEEK_OUT_OF_RANGE,
                "The submitted week does not fall within your assignment period",
            )

        found = self.store.get_code(normalize_code(code))
        if not found:
            raise AsyncAttendanceError(RefusalReason.CODE_NOT_FOUND, "Invalid attendance code")
        if not found.is_active:
            raise AsyncAttendanceError(RefusalReason.CODE_INACTIVE, "This code has been deactivated")
        if self.clock() > found.valid_until:
            raise AsyncAttendanceError(RefusalReason.CODE_EXPIRED, "This code has expired")
        if found.grade != assignment.grade:
            raise AsyncAttendanceError(
                RefusalReason.GRADE_MISMATCH, "This code is for a different grade than your assignment"
            )

        number = week_number(start, week_day, assignment.total_weeks)
        if number is None:
            raise AsyncAttendanceError(
                RefusalReason.WEEK_OUT_OF_RANGE, "Invalid week number for this assignment"
            )

        existing = self.store.get_log(assignment.id, number)
        if existing is None:
            log = AsyncLog(
                id=_new_id(),
                assignment_id=assignment.id,
                week_number=number,
                week_of=week_of_number(start, number),
                status=AsyncLogStatus.VERIFIED,
                code_id=found.id,
                student_notes=student_notes or None,
            )
            try:
                self.store.add_log(log)
            except DuplicateLogError:
                # A concurrent submission created the row first
                existing = self.store.get_log(assignment.id, number)
            else:
                logger.info("Verified week %d for assignment %s with code %s", number, assignment.id, found.code)
                return log

        if existing is not None and existing.status == AsyncLogStatus.REJECTED:
            resubmitted = existing.model_copy(update={
                'status': AsyncLogStatus.VERIFIED,
                'code_id': found.id,
                'student_notes': student_notes or existing.student_notes,
                'notes': None,
                'marked_by': None,
            })
            try:
                self.store.save_log(resubmitted, expected_status=AsyncLogStatus.REJECTED)
            except LogStatusConflictError as e:
                # A concurrent resubmission or staff action changed the row first
                raise AsyncAttendanceError(
                    RefusalReason.ALREADY_LOGGED, "Attendance already logged for this week"
                ) from e
            logger.info("Re-verified rejected week %d for assignment %s", number, assignment.id)
            return resubmitted

        raise AsyncAttendanceError(RefusalReason.ALREADY_LOGGED, "Attendance already logged for this week")

    def apply_admin_action(
        self,
        assignment: AsyncAssignment,
        week_number: int,
        status: Union[AsyncLogStatus, str],
        notes: Optional[str] = None,
        marked_by: Optional[str] = None
    ) -> AsyncLog:
        """
        Staff marks a week MANUAL, EXCUSED or REJECTED, creating the row if needed.

        Raises:
            AsyncAttendanceError: INVALID_STATUS or WEEK_OUT_OF_RANGE
        """
        try:
            status = AsyncLogStatus(status)
        except ValueError:
            status = None
        if status not in STAFF_STATUSES:
            raise AsyncAttendanceError(
                RefusalReason.INVALID_STATUS, "Invalid status. Must be one of: MANUAL, EXCUSED, REJECTED"
            )

        if week_number < 1 or week_number > assignment.total_weeks:
            raise AsyncAttendanceError(
                RefusalReason.WEEK_OUT_OF_RANGE,
                f"Week number must be between 1 and {assignment.total_weeks}",
            )

        changes = {'status': status, 'notes': notes or None, 'marked_by': marked_by}
        existing = self.store.get_log(assignment.id, week_number)
        if existing is None:
            log = AsyncLog(
                id=_new_id(),
                assignment_id=assignment.id,
                week_number=week_number,
                week_of=week_of_number(assignment.start_date, week_number),
                **changes,
            )
            try:
                self.store.add_log(log)
            except DuplicateLogError:
                existing = self.store.get_log(assignment.id, week_number)
            else:
                logger.info("Marked week %d %s for assignment %s", week_number, status.value, assignment.id)
                return log

        updated = existing.model_copy(update=changes)
        self.store.save_log(updated)
        logger.info("Marked week %d %s for assignment %s", week_number, status.value, assignment.id)
        return updated

    def progress(
        self,
        assignment: AsyncAssignment,
        required_percentage: float = THRESHOLDS.attendance
    ) -> AttendanceStats:
        return evaluate_async_attendance(
            self.store.list_logs(assignment.id), assignment.total_weeks, required_percentage
        )

    def _parse_week(self, value) -> date:
        try:
            return parse_week_of(value)
        except ValueError as e:
            raise AsyncAttendanceError(RefusalReason.INVALID_DATE, str(e)) from e
