from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from token_crypto import EncryptedText


class UserRole(str, Enum):
    admin = "admin"
    office = "office"
    manager = "manager"


class UserStatus(str, Enum):
    pending_approval = "pending_approval"
    active = "active"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        SAEnum(UserRole), nullable=False, default=UserRole.manager
    )
    location_id: Mapped[Optional[int]] = mapped_column(ForeignKey("locations.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[UserStatus] = mapped_column(
        SAEnum(UserStatus), nullable=False, default=UserStatus.active
    )
    permitted_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    permitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    location: Mapped[Optional["Location"]] = relationship("Location")


class Realm(Base, TimestampMixin):
    """A connected QuickBooks company and its OAuth credentials."""

    __tablename__ = "realms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(EncryptedText)
    refresh_token: Mapped[Optional[str]] = mapped_column(EncryptedText)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    refresh_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    locations: Mapped[list["Location"]] = relationship(
        "Location", back_populates="realm"
    )


class Location(Base, TimestampMixin):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    realm_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("realms.id", ondelete="SET NULL")
    )
    class_id: Mapped[Optional[str]] = mapped_column(String(64))

    realm: Mapped[Optional["Realm"]] = relationship("Realm", back_populates="locations")
    budgets: Mapped[list["Budget"]] = relationship("Budget", back_populates="location")


class BudgetSettings(Base, TimestampMixin):
    __tablename__ = "budget_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    reference_period_months: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))

    __table_args__ = (
        CheckConstraint(
            "budget_rate >= 0 AND budget_rate <= 1", name="ck_settings_rate_range"
        ),
        CheckConstraint(
            "reference_period_months > 0", name="ck_settings_reference_positive"
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    budget_rate_used: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4))
    reference_period_months_used: Mapped[Optional[int]] = mapped_column(Integer)
    error: Mapped[Optional[str]] = mapped_column(String(64))

    location: Mapped["Location"] = relationship("Location", back_populates="budgets")

    __table_args__ = (
        UniqueConstraint("location_id", "year_month", name="uq_budget_location_month"),
        Index("ix_budgets_year_month", "year_month"),
        CheckConstraint("total_amount >= 0", name="ck_budget_amount_positive"),
    )
