"""Unit tests for async_codes module."""

import re
from datetime import date, datetime, timedelta

import pytest

from eligibility.async_codes import (
    CODE_ALPHABET,
    AsyncAttendanceError,
    AsyncAttendanceProtocol,
    DuplicateAssignmentError,
    DuplicateCodeError,
    InMemoryAsyncStore,
    LogStatusConflictError,
    RefusalReason,
    assignment_weeks,
    async_logs_as_marks,
    code_valid_until,
    generate_code,
    normalize_code,
    parse_code_prefix,
    week_number,
    week_start,
)
from eligibility.models import (
    AsyncAssignment,
    AsyncGrade,
    AsyncLog,
    AsyncLogStatus,
    AttendanceStatus,
)

NOW = datetime(2025, 10, 20, 12, 0)


@pytest.fixture
def store():
    return InMemoryAsyncStore()


@pytest.fixture
def protocol(store):
    return AsyncAttendanceProtocol(store, clock=lambda: NOW)


@pytest.fixture
def assignment(store):
    return store.add_assignment(AsyncAssignment(
        id='a1',
        student_id='s1',
        grade=AsyncGrade.GRADE_3,
        start_date=date(2025, 10, 5),
        total_weeks=8,
    ))


def refusal(excinfo):
    return excinfo.value.reason


# ----- helpers -----

def test_week_number():
    start = date(2025, 10, 5)
    assert week_number(start, date(2025, 10, 19)) == 3
    assert week_number(start, date(2025, 10, 5)) == 1
    assert week_number(start, date(2025, 10, 11)) == 1
    assert week_number(start, date(2025, 10, 12)) == 2
    assert week_number(start, date(2025, 9, 28)) is None
    assert week_number(start, date(2025, 10, 19), total_weeks=2) is None


def test_week_number_ignores_time_of_day():
    assert week_number('2025-10-05', datetime(2025, 10, 18, 23, 59)) == 2
    assert week_number('2025-10-05T18:00:00', '2025-10-12') == 2


def test_week_start_is_previous_sunday():
    assert week_start(date(2025, 10, 22)) == date(2025, 10, 19)
    assert week_start(date(2025, 10, 19)) == date(2025, 10, 19)
    assert week_start('2025-10-25') == date(2025, 10, 19)


def test_generate_code_format():
    pattern = re.compile(f"^G3-[{CODE_ALPHABET}]{{4}}$")
    for _ in range(50):
        code = generate_code(AsyncGrade.GRADE_3)
        assert pattern.match(code)
        assert not set(code[3:]) & set('01OIL')

    assert generate_code(AsyncGrade.PRE_K).startswith('PK-')
    assert generate_code('GRADE_6_PLUS').startswith('G6-')


def test_code_prefix_and_normalization():
    assert normalize_code('  g3-k7qm ') == 'G3-K7QM'
    assert parse_code_prefix('kg-ABCD') == AsyncGrade.KINDERGARTEN
    assert parse_code_prefix('XX-ABCD') is None


def test_code_valid_until_end_of_day():
    until = code_valid_until('2025-10-19')
    assert until.date() == date(2025, 10, 26)
    assert (until.hour, until.minute, until.second) == (23, 59, 59)
    assert code_valid_until(date(2025, 10, 19), days=1).date() == date(2025, 10, 20)


def test_assignment_weeks():
    weeks = assignment_weeks(date(2025, 10, 5), 3)
    assert [w['week_number'] for w in weeks] == [1, 2, 3]
    assert weeks[2]['week_of'] == date(2025, 10, 19)


def test_async_logs_as_marks():
    logs = [
        AsyncLog(id=str(n), assignment_id='a1', week_number=n, week_of=date(2025, 10, 5), status=status)
        for n, status in enumerate(AsyncLogStatus, start=1)
    ]
    assert async_logs_as_marks(logs) == [
        AttendanceStatus.PRESENT,
        AttendanceStatus.PRESENT,
        AttendanceStatus.EXCUSED,
        AttendanceStatus.ABSENT,
    ]


# ----- code issuance -----

def test_issue_code(protocol):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-22', issued_by='servant1')

    assert code.code.startswith('G3-')
    assert code.week_of == date(2025, 10, 22)
    assert code.is_active
    assert code.generated_by == 'servant1'
    assert code.created_at == NOW
    assert code.valid_until.date() == date(2025, 10, 29)


def test_issue_code_custom_validity(protocol):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19', validity=timedelta(days=2))
    assert code.valid_until == datetime(2025, 10, 21)


def test_issue_code_refuses_second_active_code(protocol):
    first = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    assert refusal(excinfo) == RefusalReason.CODE_EXISTS

    # Other grades and weeks are independent
    protocol.issue_code(AsyncGrade.GRADE_4, '2025-10-19')
    protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-26')

    # Deactivating frees the slot
    protocol.deactivate_code(first.code)
    replacement = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    assert replacement.code != first.code


def test_issue_code_invalid_date(protocol):
    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.issue_code(AsyncGrade.GRADE_3, '2025-13-40')
    assert refusal(excinfo) == RefusalReason.INVALID_DATE


class CollidingStore(InMemoryAsyncStore):
    """Rejects the first code string it sees as already taken."""

    def __init__(self):
        super().__init__()
        self.collisions = 1

    def add_code(self, code):
        if self.collisions:
            self.collisions -= 1
            raise DuplicateCodeError("taken", field='code')
        return super().add_code(code)


def test_issue_code_retries_on_code_collision():
    store = CollidingStore()
    protocol = AsyncAttendanceProtocol(store, clock=lambda: NOW)

    code = protocol.issue_code(AsyncGrade.GRADE_1, '2025-10-19')

    assert store.collisions == 0
    assert store.get_code(code.code) is not None


class BlindStore(InMemoryAsyncStore):
    """Never reports an active code, so only the insert constraint catches duplicates."""

    def find_active_code(self, grade, week_of):
        return None


def test_issue_code_concurrent_duplicate_is_refused():
    protocol = AsyncAttendanceProtocol(BlindStore(), clock=lambda: NOW)
    protocol.issue_code(AsyncGrade.GRADE_2, '2025-10-19')

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.issue_code(AsyncGrade.GRADE_2, '2025-10-19')
    assert refusal(excinfo) == RefusalReason.CODE_EXISTS


def test_issue_week_codes(protocol):
    protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')

    generated = protocol.issue_week_codes('2025-10-19', issued_by='admin')

    assert len(generated) == len(AsyncGrade) - 1
    assert AsyncGrade.GRADE_3 not in {c.grade for c in generated}
    assert protocol.issue_week_codes('2025-10-19') == []


def test_current_codes(protocol):
    expired = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-05')
    current = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    deactivated = protocol.issue_code(AsyncGrade.GRADE_4, '2025-10-19')
    protocol.deactivate_code(deactivated.code)

    codes = [c.code for c in protocol.current_codes()]

    assert current.code in codes
    assert expired.code not in codes
    assert deactivated.code not in codes


def test_deactivate_unknown_code(protocol):
    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.deactivate_code('G3-ZZZZ')
    assert refusal(excinfo) == RefusalReason.CODE_NOT_FOUND


# ----- redemption -----

def test_redeem_code(protocol, store, assignment):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')

    log = protocol.redeem_code(f"  {code.code.lower()} ", assignment, '2025-10-22', student_notes='Watched online')

    assert log.status == AsyncLogStatus.VERIFIED
    assert log.week_number == 3
    assert log.week_of == date(2025, 10, 19)
    assert log.code_id == code.id
    assert log.student_notes == 'Watched online'
    assert store.get_log('a1', 3) == log


def test_redeem_twice_is_refused(protocol, assignment):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    protocol.redeem_code(code.code, assignment, '2025-10-19')

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code(code.code, assignment, '2025-10-20')
    assert refusal(excinfo) == RefusalReason.ALREADY_LOGGED


@pytest.mark.parametrize('target_week', ['2025-09-28', '2025-10-04', '2025-11-30'])
def test_redeem_outside_assignment(protocol, assignment, target_week):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code(code.code, assignment, target_week)
    assert refusal(excinfo) == RefusalReason.WEEK_OUT_OF_RANGE


def test_redeem_last_week(protocol, assignment):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    log = protocol.redeem_code(code.code, assignment, '2025-11-29')
    assert log.week_number == 8
    assert log.week_of == date(2025, 11, 23)


def test_redeem_refusals(protocol, store, assignment):
    g3 = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    g4 = protocol.issue_code(AsyncGrade.GRADE_4, '2025-10-19')
    old = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-05')
    off = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-12')
    protocol.deactivate_code(off.code)

    cases = [
        (g3.code, 'not-a-date', RefusalReason.INVALID_DATE),
        ('G3-ZZZZ', '2025-10-19', RefusalReason.CODE_NOT_FOUND),
        (off.code, '2025-10-19', RefusalReason.CODE_INACTIVE),
        (old.code, '2025-10-19', RefusalReason.CODE_EXPIRED),
        (g4.code, '2025-10-19', RefusalReason.GRADE_MISMATCH),
    ]
    for code, target_week, reason in cases:
        with pytest.raises(AsyncAttendanceError) as excinfo:
            protocol.redeem_code(code, assignment, target_week)
        assert refusal(excinfo) == reason

    assert store.list_logs('a1') == []


def test_redeem_inactive_assignment(protocol, assignment):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    inactive = assignment.model_copy(update={'is_active': False})

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code(code.code, inactive, '2025-10-19')
    assert refusal(excinfo) == RefusalReason.ASSIGNMENT_INACTIVE

    # Checked before the code itself
    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code('G3-ZZZZ', inactive, '2025-10-19')
    assert refusal(excinfo) == RefusalReason.ASSIGNMENT_INACTIVE


def test_refusal_is_a_value_error(protocol, assignment):
    with pytest.raises(ValueError):
        protocol.redeem_code('G3-ZZZZ', assignment, '2025-10-19')


def test_resubmit_after_rejection(protocol, store, assignment):
    rejected = protocol.apply_admin_action(
        assignment, 3, AsyncLogStatus.REJECTED, notes='Code from another week', marked_by='staff1'
    )
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')

    log = protocol.redeem_code(code.code, assignment, '2025-10-19', student_notes='Second try')

    assert log.id == rejected.id
    assert log.status == AsyncLogStatus.VERIFIED
    assert log.code_id == code.id
    assert log.notes is None
    assert log.marked_by is None
    assert log.student_notes == 'Second try'
    assert len(store.list_logs('a1')) == 1


def test_resubmit_keeps_previous_student_notes(protocol, store, assignment):
    first = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    protocol.redeem_code(first.code, assignment, '2025-10-19', student_notes='Was sick')
    protocol.apply_admin_action(assignment, 3, 'REJECTED')

    log = protocol.redeem_code(first.code, assignment, '2025-10-19')

    assert log.status == AsyncLogStatus.VERIFIED
    assert log.student_notes == 'Was sick'


@pytest.mark.parametrize('status', [AsyncLogStatus.VERIFIED, AsyncLogStatus.MANUAL, AsyncLogStatus.EXCUSED])
def test_redeem_over_staff_mark_is_refused(protocol, store, assignment, status):
    store.add_log(AsyncLog(
        id='existing', assignment_id='a1', week_number=3, week_of=date(2025, 10, 19), status=status
    ))
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code(code.code, assignment, '2025-10-19')
    assert refusal(excinfo) == RefusalReason.ALREADY_LOGGED
    assert store.get_log('a1', 3).status == status


class StaleReadStore(InMemoryAsyncStore):
    """The first get_log misses, as if another request inserted right after the read."""

    def __init__(self):
        super().__init__()
        self.stale_reads = 1

    def get_log(self, assignment_id, week_number):
        if self.stale_reads:
            self.stale_reads -= 1
            return None
        return super().get_log(assignment_id, week_number)


def test_concurrent_redemption_is_refused():
    store = StaleReadStore()
    protocol = AsyncAttendanceProtocol(store, clock=lambda: NOW)
    assignment = store.add_assignment(AsyncAssignment(
        id='a1', student_id='s1', grade=AsyncGrade.GRADE_3, start_date=date(2025, 10, 5), total_weeks=8
    ))
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    store.add_log(AsyncLog(
        id='winner', assignment_id='a1', week_number=3, week_of=date(2025, 10, 19),
        status=AsyncLogStatus.VERIFIED, code_id=code.id,
    ))

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code(code.code, assignment, '2025-10-19')
    assert refusal(excinfo) == RefusalReason.ALREADY_LOGGED
    assert [log.id for log in store.list_logs('a1')] == ['winner']


def test_concurrent_admin_action_updates_existing_row():
    store = StaleReadStore()
    protocol = AsyncAttendanceProtocol(store, clock=lambda: NOW)
    assignment = store.add_assignment(AsyncAssignment(
        id='a1', student_id='s1', grade=AsyncGrade.GRADE_3, start_date=date(2025, 10, 5), total_weeks=8
    ))
    store.add_log(AsyncLog(
        id='winner', assignment_id='a1', week_number=2, week_of=date(2025, 10, 12),
        status=AsyncLogStatus.VERIFIED,
    ))

    log = protocol.apply_admin_action(assignment, 2, AsyncLogStatus.EXCUSED, notes='Travel')

    assert log.id == 'winner'
    assert store.get_log('a1', 2).status == AsyncLogStatus.EXCUSED


class RacingResubmissionStore(InMemoryAsyncStore):
    """Another resubmission re-verifies the row right after this request reads it."""

    def get_log(self, assignment_id, week_number):
        found = super().get_log(assignment_id, week_number)
        if found is not None and found.status == AsyncLogStatus.REJECTED:
            super().save_log(found.model_copy(update={'status': AsyncLogStatus.VERIFIED}))
        return found


def test_concurrent_resubmission_is_refused():
    store = RacingResubmissionStore()
    protocol = AsyncAttendanceProtocol(store, clock=lambda: NOW)
    assignment = store.add_assignment(AsyncAssignment(
        id='a1', student_id='s1', grade=AsyncGrade.GRADE_3, start_date=date(2025, 10, 5), total_weeks=8
    ))
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    store.add_log(AsyncLog(
        id='rejected', assignment_id='a1', week_number=3, week_of=date(2025, 10, 19),
        status=AsyncLogStatus.REJECTED, notes='Wrong week',
    ))

    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.redeem_code(code.code, assignment, '2025-10-19', student_notes='Second try')
    assert refusal(excinfo) == RefusalReason.ALREADY_LOGGED
    # The winning write is kept
    assert store.get_log('a1', 3).notes == 'Wrong week'
    assert store.get_log('a1', 3).student_notes is None


def test_save_log_compare_and_set(store):
    log = AsyncLog(
        id='l1', assignment_id='a1', week_number=2, week_of=date(2025, 10, 12), status=AsyncLogStatus.VERIFIED
    )
    store.add_log(log)

    with pytest.raises(LogStatusConflictError):
        store.save_log(log.model_copy(update={'status': AsyncLogStatus.MANUAL}), expected_status=AsyncLogStatus.REJECTED)
    assert store.get_log('a1', 2).status == AsyncLogStatus.VERIFIED

    store.save_log(log.model_copy(update={'status': AsyncLogStatus.MANUAL}), expected_status=AsyncLogStatus.VERIFIED)
    assert store.get_log('a1', 2).status == AsyncLogStatus.MANUAL

    missing = log.model_copy(update={'week_number': 5})
    with pytest.raises(LogStatusConflictError):
        store.save_log(missing, expected_status=AsyncLogStatus.REJECTED)


def test_duplicate_assignment_is_refused(store, assignment):
    with pytest.raises(DuplicateAssignmentError):
        store.add_assignment(assignment.model_copy(update={'total_weeks': 2}))
    assert store.get_assignment('a1').total_weeks == 8


# ----- staff actions -----

def test_admin_action_creates_and_updates(protocol, store, assignment):
    created = protocol.apply_admin_action(assignment, 2, AsyncLogStatus.MANUAL, marked_by='staff1')

    assert created.status == AsyncLogStatus.MANUAL
    assert created.week_of == date(2025, 10, 12)
    assert created.marked_by == 'staff1'
    assert created.code_id is None

    updated = protocol.apply_admin_action(assignment, 2, 'EXCUSED', notes='Family emergency', marked_by='staff2')

    assert updated.id == created.id
    assert updated.status == AsyncLogStatus.EXCUSED
    assert updated.notes == 'Family emergency'
    assert updated.marked_by == 'staff2'
    assert len(store.list_logs('a1')) == 1


def test_admin_action_keeps_code_reference(protocol, assignment):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    protocol.redeem_code(code.code, assignment, '2025-10-19')

    rejected = protocol.apply_admin_action(assignment, 3, AsyncLogStatus.REJECTED)

    assert rejected.status == AsyncLogStatus.REJECTED
    assert rejected.code_id == code.id


@pytest.mark.parametrize('status', ['VERIFIED', 'PRESENT', 'bogus'])
def test_admin_action_invalid_status(protocol, assignment, status):
    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.apply_admin_action(assignment, 2, status)
    assert refusal(excinfo) == RefusalReason.INVALID_STATUS


@pytest.mark.parametrize('number', [0, 9, -1])
def test_admin_action_week_out_of_range(protocol, assignment, number):
    with pytest.raises(AsyncAttendanceError) as excinfo:
        protocol.apply_admin_action(assignment, number, AsyncLogStatus.MANUAL)
    assert refusal(excinfo) == RefusalReason.WEEK_OUT_OF_RANGE


# ----- progress -----

def test_progress(protocol, assignment):
    code = protocol.issue_code(AsyncGrade.GRADE_3, '2025-10-19')
    protocol.apply_admin_action(assignment, 1, AsyncLogStatus.MANUAL)
    protocol.apply_admin_action(assignment, 2, AsyncLogStatus.EXCUSED)
    protocol.redeem_code(code.code, assignment, '2025-10-19')
    protocol.apply_admin_action(assignment, 4, AsyncLogStatus.REJECTED)

    stats = protocol.progress(assignment)

    assert stats.present_count == 2
    assert stats.excused_count == 1
    assert stats.absent_count == 1
    assert stats.total_countable_sessions == 8
    # Excused week leaves the denominator; unlogged weeks count against
    assert stats.effective_total == 7
    assert stats.percentage == pytest.approx(28.571, abs=0.001)
    assert stats.met == False


def test_progress_without_logs(protocol, assignment):
    stats = protocol.progress(assignment, required_percentage=0)
    assert stats.percentage == 0.0
    assert stats.met == True
