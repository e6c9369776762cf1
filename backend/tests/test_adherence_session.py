from __future__ import annotations

import sys
from datetime import date, datetime, time, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base, enable_sqlite_pragmas  # noqa: E402
from db.models import Medicine, MedicineLog, ScheduledReminder, User, UserSettings  # noqa: E402
from services.adherence_session import AdherenceSession, session_for_user, user_timezone  # noqa: E402
from services.dose_store import SqlAlchemyDoseStore  # noqa: E402
from services.errors import AlreadyTaken, LogNotFound, MedicineNotFound  # noqa: E402
from services.reminder_service import OutboxReminderSink, build_dose_reminders, pending_reminders  # noqa: E402


DAY = date(2026, 10, 17)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    enable_sqlite_pragmas(engine)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username: str = "session_tester", tz_name: str = "UTC") -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name="Session Tester",
    )
    user.settings = UserSettings(timezone=tz_name, reminders_enabled=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _new_medicine(db, user: User, **overrides) -> Medicine:
    fields = {
        "user_id": user.id,
        "name": "Metformin",
        "dose": "500 mg",
        "frequency": 2,
        "timing": "after_meal",
        "start_date": date(2026, 10, 15),
        "duration_days": 10,
        "is_active": True,
    }
    fields.update(overrides)
    medicine = Medicine(**fields)
    db.add(medicine)
    db.commit()
    db.refresh(medicine)
    return medicine


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _RecordingSink:
    def __init__(self):
        self.batches = []

    def schedule(self, reminders):
        self.batches.append(list(reminders))
        return len(reminders)


class _BrokenSink:
    def schedule(self, reminders):
        raise RuntimeError("push service unavailable")


def _session(db, now: datetime, **kwargs) -> AdherenceSession:
    return AdherenceSession(SqlAlchemyDoseStore(db), tz_name=kwargs.pop("tz_name", "UTC"), clock=_Clock(now), **kwargs)


def test_refresh_is_idempotent():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    session = _session(db, datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc))

    first = session.refresh(user.id)
    db.commit()
    second = session.refresh(user.id)
    db.commit()

    assert first.day == DAY
    assert first.inserted == 2
    assert second.inserted == 0
    assert db.query(MedicineLog).count() == 2


def test_refresh_picks_up_a_new_day():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    clock = _Clock(datetime(2026, 10, 17, 23, 30, tzinfo=timezone.utc))
    session = AdherenceSession(SqlAlchemyDoseStore(db), tz_name="UTC", clock=clock)

    assert session.refresh(user.id).inserted == 2
    clock.now = datetime(2026, 10, 18, 0, 5, tzinfo=timezone.utc)
    result = session.refresh(user.id)
    db.commit()

    assert result.day == date(2026, 10, 18)
    assert result.inserted == 2


def test_today_follows_the_users_zone():
    db = _new_db()
    session = _session(db, datetime(2026, 10, 17, 20, 0, tzinfo=timezone.utc), tz_name="Asia/Tokyo")
    assert session.today() == date(2026, 10, 18)


def test_inactive_and_invalid_medicines_are_skipped():
    db = _new_db()
    user = _new_user(db)
    good = _new_medicine(db, user)
    _new_medicine(db, user, name="Old", is_active=False)
    broken = _new_medicine(db, user, name="Broken", custom_dose_times='["08:00", "12:00", "18:00"]')

    result = _session(db, datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc)).refresh(user.id)
    db.commit()

    assert result.medicines == 1
    assert result.skipped_medicine_ids == [broken.id]
    assert {log.medicine_id for log in db.query(MedicineLog).all()} == {good.id}


def test_today_view_classifies_and_groups():
    db = _new_db()
    user = _new_user(db)
    metformin = _new_medicine(db, user)
    _new_medicine(db, user, name="Vitamin D", dose=None, frequency=1, timing="before_meal")
    session = _session(db, datetime(2026, 10, 17, 13, 15, tzinfo=timezone.utc))

    view = session.today_view(user.id)
    db.commit()

    assert view["date"] == "2026-10-17"
    assert [(d["medicine_name"], d["scheduled_time"]) for d in view["doses"]] == [
        ("Metformin", "08:00:00"),
        ("Vitamin D", "08:00:00"),
        ("Metformin", "14:00:00"),
    ]
    states = {(d["medicine_name"], d["scheduled_time"]): d["state"] for d in view["doses"]}
    assert states[("Metformin", "08:00:00")] == "missed"
    assert states[("Metformin", "14:00:00")] == "due_soon"

    groups = {g["name"]: g for g in view["medicines"]}
    assert len(groups["Metformin"]["doses"]) == 2
    assert groups["Metformin"]["medicine_id"] == metformin.id
    assert groups["Vitamin D"]["timing_label"] == "before meal"

    summary = view["summary"]
    assert summary["total"] == 3
    assert summary["missed"] == 2
    assert summary["due_soon"] == 1
    assert summary["taken"] == 0


def test_mark_taken_then_reject_second_mark():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    now = datetime(2026, 10, 17, 13, 15, tzinfo=timezone.utc)
    session = _session(db, now)
    session.refresh(user.id)
    db.commit()
    log = db.query(MedicineLog).filter(MedicineLog.scheduled_time == time(14, 0)).one()

    entry = session.mark_taken(user.id, log.id)
    db.commit()
    assert entry["status"] == "taken"
    assert entry["state"] == "taken_on_time"
    assert entry["detail"] == "Taken at 1:15 PM"

    with pytest.raises(AlreadyTaken) as exc:
        session.mark_taken(user.id, log.id, taken_at=datetime(2026, 10, 17, 16, 0, tzinfo=timezone.utc))
    assert exc.value.status == "taken"

    db.refresh(log)
    assert log.status == "taken"
    assert log.taken_at.replace(tzinfo=None) == datetime(2026, 10, 17, 13, 15)


def test_mark_taken_records_explicit_time():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    session = _session(db, datetime(2026, 10, 17, 18, 0, tzinfo=timezone.utc))
    session.refresh(user.id)
    log = db.query(MedicineLog).filter(MedicineLog.scheduled_time == time(8, 0)).one()

    entry = session.mark_taken(user.id, log.id, taken_at=datetime(2026, 10, 17, 11, 30, tzinfo=timezone.utc))
    assert entry["state"] == "taken_off_schedule"


def test_skipped_dose_cannot_be_taken():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    session = _session(db, datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc))
    session.refresh(user.id)
    log = db.query(MedicineLog).first()

    assert session.mark_skipped(user.id, log.id)["state"] == "skipped"
    with pytest.raises(AlreadyTaken) as exc:
        session.mark_taken(user.id, log.id)
    assert exc.value.status == "skipped"


def test_logs_of_other_users_are_not_found():
    db = _new_db()
    owner = _new_user(db, "owner")
    other = _new_user(db, "other")
    _new_medicine(db, owner)
    session = _session(db, datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc))
    session.refresh(owner.id)
    log = db.query(MedicineLog).first()

    with pytest.raises(LogNotFound):
        session.mark_taken(other.id, log.id)
    with pytest.raises(LogNotFound):
        session.mark_skipped(owner.id, 999999)


def test_regenerate_forward_fills_upcoming_days():
    db = _new_db()
    user = _new_user(db)
    medicine = _new_medicine(db, user)
    session = _session(db, datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc))

    assert session.regenerate_forward(user.id, medicine.id, 3) == 6
    assert session.regenerate_forward(user.id, medicine.id, 3) == 0
    dates = sorted({log.scheduled_date for log in db.query(MedicineLog).all()})
    assert dates == [date(2026, 10, 17), date(2026, 10, 18), date(2026, 10, 19)]

    with pytest.raises(MedicineNotFound):
        session.regenerate_forward(user.id, 999999, 3)


def test_reminders_only_for_doses_still_an_hour_away():
    db = _new_db()
    user = _new_user(db)
    medicine = _new_medicine(db, user)
    sink = _RecordingSink()
    session = _session(db, datetime(2026, 10, 17, 10, 0, tzinfo=timezone.utc), reminder_sink=sink)

    result = session.refresh(user.id)

    assert result.reminders == 1
    (reminder,) = sink.batches[0]
    assert reminder.reminder_key == f"dose:{medicine.id}:2026-10-17:14:00:00"
    assert reminder.fire_at == datetime(2026, 10, 17, 13, 0, tzinfo=timezone.utc)
    assert reminder.title == "Medicine Reminder"
    assert reminder.body == "Metformin (500 mg) – take in 1 hour!"
    assert reminder.channel == "medicine-reminders"


def test_reminder_failure_does_not_block_materialization():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    session = _session(db, datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc), reminder_sink=_BrokenSink())

    result = session.refresh(user.id)
    db.commit()

    assert result.inserted == 2
    assert result.reminders == 0


def test_outbox_sink_deduplicates_reminders():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    now = datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc)
    session = _session(db, now, reminder_sink=OutboxReminderSink(db))

    assert session.refresh(user.id).reminders == 2
    assert session.refresh(user.id).reminders == 0
    db.commit()

    assert db.query(ScheduledReminder).count() == 2
    upcoming = pending_reminders(db, user.id, now)
    assert [r.reminder_key.rsplit(":", 3)[-3:] for r in upcoming] == [["08", "00", "00"], ["14", "00", "00"]]
    assert pending_reminders(db, user.id, datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc))[0].body.startswith(
        "Metformin"
    )


def test_outbox_keeps_doses_in_the_same_minute_apart():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user, frequency=2, custom_dose_times='["20:00:10", "20:00:40"]')
    session = _session(db, datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc), reminder_sink=OutboxReminderSink(db))

    assert session.refresh(user.id).reminders == 2
    db.commit()
    assert db.query(ScheduledReminder).count() == 2


def test_outbox_write_failure_keeps_the_dose_logs():
    db = _new_db()
    user = _new_user(db)
    _new_medicine(db, user)
    ScheduledReminder.__table__.drop(db.connection())
    session = _session(db, datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc), reminder_sink=OutboxReminderSink(db))

    result = session.refresh(user.id)
    db.commit()

    assert result.inserted == 2
    assert result.reminders == 0
    assert db.query(MedicineLog).count() == 2


def test_outbox_failure_rolls_back_only_its_savepoint():
    db = _new_db()
    user = _new_user(db)
    medicine = _new_medicine(db, user)
    now = datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc)
    _session(db, now).refresh(user.id)

    morning = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)
    afternoon = datetime(2026, 10, 17, 14, 0, tzinfo=timezone.utc)
    good = build_dose_reminders(medicine.id, "Metformin", [morning], now, user_id=user.id)
    orphan = build_dose_reminders(medicine.id, "Metformin", [afternoon], now, user_id=999999)
    with pytest.raises(IntegrityError):
        OutboxReminderSink(db).schedule(good + orphan)
    db.commit()

    assert db.query(ScheduledReminder).count() == 0
    assert db.query(MedicineLog).count() == 2


def test_today_view_keeps_closed_doses_of_a_deactivated_medicine():
    db = _new_db()
    user = _new_user(db)
    medicine = _new_medicine(db, user)
    session = _session(db, datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc))
    morning = session.today_view(user.id)["doses"][0]
    session.mark_taken(user.id, morning["log_id"])

    medicine.is_active = False
    db.commit()

    view = session.today_view(user.id)
    assert [(d["scheduled_time"], d["status"]) for d in view["doses"]] == [("08:00:00", "taken")]
    assert view["summary"]["total"] == 1
    assert view["summary"]["taken"] == 1


def test_session_for_user_reads_settings():
    db = _new_db()
    user = _new_user(db, tz_name="Europe/Berlin")
    session = session_for_user(db, user)
    assert session.tz_name == "Europe/Berlin"
    assert isinstance(session.reminder_sink, OutboxReminderSink)

    user.settings.reminders_enabled = False
    assert session_for_user(db, user).reminder_sink is None
    user.settings.timezone = ""
    assert user_timezone(user) == "UTC"
