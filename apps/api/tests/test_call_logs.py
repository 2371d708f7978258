from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import CallLog, CallLogStatus, CallType, Role
from app.services import call_logs
from app.services.call_logs import CallLogEntry, normalize_phone, sync_call_logs
from app.tenancy import RequestContext
from conftest import OTHER_ACCOUNT_ID, OTHER_USER_ID, make_collection, make_record

CALLED_AT = datetime(2026, 10, 18, 14, 30, tzinfo=UTC)


@pytest.fixture()
def lead(db_session: Session, seeded_context: dict[str, str]):  # noqa: ANN201
    collection = make_collection(db_session)
    return make_record(db_session, collection, 0, display_name="Asha", phone_number="+91 98765 43210")


def _entry(phone: str, call_type: CallType = CallType.INCOMING, duration: int = 30, **kwargs) -> CallLogEntry:  # noqa: ANN003
    return CallLogEntry(phone_number=phone, call_type=call_type, duration_seconds=duration, timestamp=CALLED_AT, **kwargs)


def test_normalize_phone_keeps_last_ten_digits() -> None:
    assert normalize_phone("+91 (987) 654-3210") == "9876543210"
    assert normalize_phone("12-34") == "1234"
    assert normalize_phone("") == ""


def test_sync_filters_unknown_numbers_and_duplicates(
    db_session: Session, admin_context: RequestContext, lead
) -> None:  # noqa: ANN001
    result = sync_call_logs(
        db_session,
        admin_context,
        [_entry("9876543210"), _entry("1112223333"), _entry("9876543210")],
    )

    assert (result.received, result.synced, result.duplicates, result.filtered) == (3, 1, 1, 1)
    db_session.refresh(lead)
    assert lead.last_call_date == "2026-10-18"
    log = db_session.scalar(select(CallLog))
    assert log is not None
    assert log.record_id == lead.id
    assert log.synced_from_mobile is True


def test_missed_calls_do_not_move_last_call_date(
    db_session: Session, admin_context: RequestContext, lead
) -> None:  # noqa: ANN001
    sync_call_logs(db_session, admin_context, [_entry("09876543210", call_type=CallType.MISSED, duration=0)])
    db_session.refresh(lead)
    assert lead.last_call_date == ""
    assert db_session.scalar(select(func.count(CallLog.id))) == 1


def test_completed_entry_closes_pending_dashboard_log(
    db_session: Session, admin_context: RequestContext, lead
) -> None:  # noqa: ANN001
    call_logs.open_pending_log(db_session, admin_context.current_user_id, lead, "9876543210")
    db_session.commit()

    result = sync_call_logs(
        db_session,
        admin_context,
        [_entry("9876543210", call_type=CallType.OUTGOING, duration=45, note="")],
    )

    assert result.synced == 1
    logs = db_session.scalars(select(CallLog)).all()
    assert len(logs) == 1
    assert logs[0].status == CallLogStatus.COMPLETED
    assert logs[0].duration_seconds == 45
    assert logs[0].note == "One-click call completed"
    assert logs[0].synced_from_mobile is True


def test_sync_requires_entries(db_session: Session, admin_context: RequestContext) -> None:
    with pytest.raises(HTTPException) as exc_info:
        sync_call_logs(db_session, admin_context, [])
    assert exc_info.value.status_code == 400


def test_match_number_and_record_logs_are_account_scoped(
    db_session: Session, admin_context: RequestContext, lead
) -> None:  # noqa: ANN001
    assert [record.id for record in call_logs.match_number(db_session, admin_context, "+91-98765-43210")] == [lead.id]
    assert call_logs.match_number(db_session, admin_context, "3210") == []

    outsider = RequestContext(current_user_id=OTHER_USER_ID, current_account_id=OTHER_ACCOUNT_ID, current_role=Role.ADMIN)
    assert call_logs.match_number(db_session, outsider, "9876543210") == []
    with pytest.raises(HTTPException) as exc_info:
        call_logs.logs_for_record(db_session, outsider, lead.id)
    assert exc_info.value.status_code == 403
