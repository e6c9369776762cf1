from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, ForeignKey, Index,
    Date, DateTime, Time,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    username_normalized = Column(Text, unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    display_name = Column(Text, nullable=False)
    date_of_birth = Column(Date, nullable=True)
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    settings = relationship("UserSettings", back_populates="user", uselist=False, cascade="all, delete-orphan")
    medicines = relationship("Medicine", back_populates="user", cascade="all, delete-orphan")


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    timezone = Column(Text, default="UTC")
    reminders_enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="settings")


class Medicine(Base):
    __tablename__ = "medicines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(Text, nullable=False)
    dose = Column(Text)  # free text, e.g. "500 mg"
    frequency = Column(Integer, nullable=False)  # doses per day, 1..10
    timing = Column(Text, nullable=False, default="after_meal")  # before_meal | after_meal | anytime
    start_date = Column(Date, nullable=False)
    duration_days = Column(Integer, nullable=False)
    custom_dose_times = Column(Text)  # JSON array of "HH:MM:SS"
    dose_interval_hours = Column(Float)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="medicines")
    logs = relationship("MedicineLog", back_populates="medicine", cascade="all, delete-orphan")
    reminders = relationship("ScheduledReminder", back_populates="medicine", cascade="all, delete-orphan")


class MedicineLog(Base):
    __tablename__ = "medicine_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    medicine_id = Column(Integer, ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending | taken | skipped
    taken_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime, default=datetime.utcnow)

    medicine = relationship("Medicine", back_populates="logs")


class ScheduledReminder(Base):
    __tablename__ = "scheduled_reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reminder_key = Column(Text, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    medicine_id = Column(Integer, ForeignKey("medicines.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    channel = Column(Text, nullable=False, default="medicine-reminders")
    fire_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    medicine = relationship("Medicine", back_populates="reminders")


# Indexes
Index("idx_users_username_normalized", User.username_normalized, unique=True)
Index("idx_user_settings_user", UserSettings.user_id, unique=True)
Index("idx_medicines_user_active", Medicine.user_id, Medicine.is_active)
Index("idx_medicines_user_start", Medicine.user_id, Medicine.start_date)
Index("idx_medicine_logs_date", MedicineLog.scheduled_date, MedicineLog.status)
Index(
    "idx_medicine_logs_unique_slot",
    MedicineLog.medicine_id,
    MedicineLog.scheduled_date,
    MedicineLog.scheduled_time,
    unique=True,
)
Index("idx_scheduled_reminders_key", ScheduledReminder.reminder_key, unique=True)
Index("idx_scheduled_reminders_user_fire", ScheduledReminder.user_id, ScheduledReminder.fire_at)
