"""Storage interface for medicines and dose logs.

The engine only talks to a ``DoseStore``. ``SqlAlchemyDoseStore`` is the
production implementation; log inserts are insert-if-absent on the unique
(medicine_id, scheduled_date, scheduled_time) index so concurrent or repeated
materialization passes never duplicate a slot.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Iterator, Protocol, runtime_checkable

from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import Medicine, MedicineLog
from services.dose_materializer import NewDoseLog
from services.errors import PersistenceFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class DoseStore(Protocol):
    def list_medicines(self, user_id: int, *, include_inactive: bool = False) -> list[Medicine]: ...

    def get_medicine(self, user_id: int, medicine_id: int) -> Medicine | None: ...

    def add_medicine(self, medicine: Medicine) -> Medicine: ...

    def delete_medicine(self, medicine: Medicine) -> None: ...

    def logs_for_date(self, user_id: int, day: date) -> list[MedicineLog]: ...

    def logs_for_medicine(self, medicine_id: int, days: Iterable[date] | None = None) -> list[MedicineLog]: ...

    def get_log(self, user_id: int, log_id: int) -> MedicineLog | None: ...

    def insert_logs_if_absent(self, new_logs: Iterable[NewDoseLog]) -> int: ...

    def delete_logs_for_medicine(self, medicine_id: int) -> int: ...

    def delete_logs(self, log_ids: Iterable[int]) -> int: ...

    def flush(self) -> None: ...


@contextmanager
def _persistence(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("Dose store failed to %s: %s", action, exc)
        raise PersistenceFailure(f"Could not {action}") from exc


class SqlAlchemyDoseStore:
    def __init__(self, db: Session):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql_insert(MedicineLog)
        return sqlite_insert(MedicineLog)

    # -- medicines ---------------------------------------------------------

    def list_medicines(self, user_id: int, *, include_inactive: bool = False) -> list[Medicine]:
        q = self.db.query(Medicine).filter(Medicine.user_id == user_id)
        if not include_inactive:
            q = q.filter(Medicine.is_active.is_(True))
        return q.order_by(Medicine.created_at.asc(), Medicine.id.asc()).all()

    def get_medicine(self, user_id: int, medicine_id: int) -> Medicine | None:
        return (
            self.db.query(Medicine)
            .filter(Medicine.id == medicine_id, Medicine.user_id == user_id)
            .first()
        )

    def add_medicine(self, medicine: Medicine) -> Medicine:
        with _persistence("save medicine"):
            self.db.add(medicine)
            self.db.flush()
        return medicine

    def delete_medicine(self, medicine: Medicine) -> None:
        with _persistence("delete medicine"):
            self.db.delete(medicine)
            self.db.flush()

    # -- logs --------------------------------------------------------------

    def logs_for_date(self, user_id: int, day: date) -> list[MedicineLog]:
        return (
            self.db.query(MedicineLog)
            .join(Medicine, Medicine.id == MedicineLog.medicine_id)
            .filter(Medicine.user_id == user_id, MedicineLog.scheduled_date == day)
            .order_by(MedicineLog.scheduled_time.asc(), MedicineLog.id.asc())
            .all()
        )

    def logs_for_medicine(self, medicine_id: int, days: Iterable[date] | None = None) -> list[MedicineLog]:
        q = self.db.query(MedicineLog).filter(MedicineLog.medicine_id == medicine_id)
        if days is not None:
            q = q.filter(MedicineLog.scheduled_date.in_(list(days)))
        return q.order_by(MedicineLog.scheduled_date.asc(), MedicineLog.scheduled_time.asc()).all()

    def get_log(self, user_id: int, log_id: int) -> MedicineLog | None:
        return (
            self.db.query(MedicineLog)
            .join(Medicine, Medicine.id == MedicineLog.medicine_id)
            .filter(MedicineLog.id == log_id, Medicine.user_id == user_id)
            .first()
        )

    def insert_logs_if_absent(self, new_logs: Iterable[NewDoseLog]) -> int:
        """Insert each slot unless it already exists. Returns rows written."""
        inserted = 0
        with _persistence("insert dose logs"):
            for entry in new_logs:
                stmt = self._insert().values(
                    medicine_id=entry.medicine_id,
                    scheduled_date=entry.scheduled_date,
                    scheduled_time=entry.scheduled_time,
                    status=entry.status,
                    taken_at=entry.taken_at,
                )
                stmt = stmt.on_conflict_do_nothing(
                    index_elements=[
                        MedicineLog.medicine_id,
                        MedicineLog.scheduled_date,
                        MedicineLog.scheduled_time,
                    ]
                )
                result = self.db.execute(stmt)
                inserted += max(result.rowcount or 0, 0)
        return inserted

    def delete_logs_for_medicine(self, medicine_id: int) -> int:
        with _persistence("delete dose logs"):
            self.db.flush()
            deleted = (
                self.db.query(MedicineLog)
                .filter(MedicineLog.medicine_id == medicine_id)
                .delete(synchronize_session=False)
            )
            # Loaded Medicine.logs collections would otherwise still list the deleted rows.
            self.db.expire_all()
        return int(deleted or 0)

    def delete_logs(self, log_ids: Iterable[int]) -> int:
        ids = [int(i) for i in log_ids]
        if not ids:
            return 0
        with _persistence("delete dose logs"):
            self.db.flush()
            deleted = (
                self.db.query(MedicineLog)
                .filter(MedicineLog.id.in_(ids))
                .delete(synchronize_session=False)
            )
            self.db.expire_all()
        return int(deleted or 0)

    def flush(self) -> None:
        with _persistence("flush"):
            self.db.flush()
