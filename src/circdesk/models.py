import enum
from datetime import date, datetime
from sqlalchemy import (
    String, Integer, Enum, ForeignKey, Text, Date, DateTime, CheckConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from circdesk.db import Base

class SubscriberStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"

class ReservationStatus(str, enum.Enum):
    PENDING   = "PENDING"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"

class ActivityType(str, enum.Enum):
    LOAN         = "LOAN"
    RETURN       = "RETURN"
    LOSS         = "LOSS"
    EXTENSION    = "EXTENSION"
    RESERVATION  = "RESERVATION"
    NOTIFICATION = "NOTIFICATION"
    OTHER        = "OTHER"

class NotificationType(str, enum.Enum):
    REMINDER              = "REMINDER"
    RESERVATION_READY     = "RESERVATION_READY"
    LATE_RETURN           = "LATE_RETURN"
    CANCELLED_RESERVATION = "CANCELLED_RESERVATION"
    RESERVATION_EXPIRED   = "RESERVATION_EXPIRED"
    OTHER                 = "OTHER"

class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_books_available_within_total",
        ),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False, index=True)
    author: Mapped[str | None] = mapped_column(String)
    subject: Mapped[str | None] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text)
    shelf_location: Mapped[str | None] = mapped_column(String)
    total_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    loans = relationship("Loan", back_populates="book")

class Subscriber(Base):
    __tablename__ = "subscribers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, index=True)
    phone: Mapped[str | None] = mapped_column(String)
    status: Mapped[SubscriberStatus] = mapped_column(Enum(SubscriberStatus, native_enum=False), default=SubscriberStatus.ACTIVE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

class SubscriberStatusHistory(Base):
    __tablename__ = "subscriber_status_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[SubscriberStatus] = mapped_column(Enum(SubscriberStatus, native_enum=False), nullable=False)
    change_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reason: Mapped[str | None] = mapped_column(String)

class Loan(Base):
    __tablename__ = "loans"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(Integer, ForeignKey("subscribers.id", ondelete="RESTRICT"), nullable=False, index=True)
    book_id: Mapped[int] = mapped_column(Integer, ForeignKey("books.id", ondelete="RESTRICT"), nullable=False, index=True)
    loan_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    actual_return_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    book = relationship("Book", back_populates="loans")

class Reservation(Base):
    __tablename__ = "reservations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(Integer, ForeignKey("subscribers.id", ondelete="RESTRICT"), nullable=False, index=True)
    book_id: Mapped[int] = mapped_column(Integer, ForeignKey("books.id", ondelete="RESTRICT"), nullable=False, index=True)
    reservation_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[ReservationStatus] = mapped_column(Enum(ReservationStatus, native_enum=False), default=ReservationStatus.PENDING, nullable=False)
    collected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=True, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType, native_enum=False), nullable=False)

class ActivityLog(Base):
    __tablename__ = "activity_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int | None] = mapped_column(Integer, index=True)
    librarian_id: Mapped[int | None] = mapped_column(Integer, index=True)
    book_id: Mapped[int | None] = mapped_column(Integer)
    activity_type: Mapped[ActivityType] = mapped_column(Enum(ActivityType, native_enum=False), nullable=False)
    activity_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
