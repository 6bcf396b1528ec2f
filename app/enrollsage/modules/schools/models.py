from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.enrollsage.models import Base, User


class School(Base):
    __tablename__ = "schools"
    __table_args__ = (
        Index("idx_schools_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    subdomain: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    current_school_year: Mapped[str] = mapped_column(String(16), nullable=False, default="2025-2026")
    grades_offered: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Contact
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    website: Mapped[str | None] = mapped_column(String(512), nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Branding
    logo_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    primary_color: Mapped[str] = mapped_column(String(16), nullable=False, default="#5B7F6D")
    secondary_color: Mapped[str] = mapped_column(String(16), nullable=False, default="#2D4F3E")

    # Stripe Connect
    stripe_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_account_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Per-school Google OAuth credentials (optional)
    google_client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    google_client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="trial")  # trial, active, suspended, cancelled
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    members: Mapped[list["SchoolMember"]] = relationship(
        back_populates="school", cascade="all, delete-orphan", lazy="selectin", order_by="SchoolMember.id"
    )
    years: Mapped[list["SchoolYear"]] = relationship(
        back_populates="school", cascade="all, delete-orphan", lazy="selectin", order_by="SchoolYear.start_date"
    )


class SchoolMember(Base):
    __tablename__ = "school_members"
    __table_args__ = (
        UniqueConstraint("user_id", "school_id", name="uq_school_members_user_school"),
        Index("idx_school_members_school", "school_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="readonly")  # owner, admin, admissions, business_office, readonly
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending, active, deactivated

    invited_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    invited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User] = relationship(foreign_keys=[user_id], lazy="joined")
    school: Mapped[School] = relationship(back_populates="members", lazy="joined")


class SchoolYear(Base):
    __tablename__ = "school_years"
    __table_args__ = (UniqueConstraint("school_id", "name", name="uq_school_years_school_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(16), nullable=False)  # "2025-2026"
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    enrollment_open_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    enrollment_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    school: Mapped[School] = relationship(back_populates="years")
