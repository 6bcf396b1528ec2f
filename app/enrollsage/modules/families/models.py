from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.enrollsage.models import Base, User
from app.enrollsage.modules.schools.models import School


class Household(Base):
    __tablename__ = "households"
    __table_args__ = (
        Index("idx_households_school", "school_id"),
        Index("idx_households_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)  # "The Johnson Family"

    primary_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    primary_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auto_pay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="prospective")  # prospective, active, inactive, withdrawn
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    school: Mapped[School] = relationship(lazy="joined")
    guardians: Mapped[list["Guardian"]] = relationship(
        back_populates="household", cascade="all, delete-orphan", lazy="selectin", order_by="Guardian.id"
    )
    students: Mapped[list["Student"]] = relationship(
        back_populates="household", cascade="all, delete-orphan", lazy="selectin", order_by="Student.id"
    )

    @property
    def primary_guardian(self) -> "Guardian | None":
        for gdn in self.guardians:
            if gdn.is_primary:
                return gdn
        return self.guardians[0] if self.guardians else None

    @property
    def billing_contacts(self) -> list["Guardian"]:
        contacts = [gdn for gdn in self.guardians if gdn.is_billing_contact and gdn.email]
        if not contacts and self.primary_guardian and self.primary_guardian.email:
            contacts = [self.primary_guardian]
        return contacts


class Guardian(Base):
    __tablename__ = "guardians"
    __table_args__ = (
        Index("idx_guardians_household", "household_id"),
        Index("idx_guardians_user", "user_id"),
        Index("idx_guardians_email", "email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(ForeignKey("households.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phone_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # mobile, home, work
    relationship_type: Mapped[str] = mapped_column("relationship", String(32), nullable=False, default="guardian")

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_portal_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_billing_contact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_emergency_contact: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_pickup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    employer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    household: Mapped[Household] = relationship(back_populates="guardians")
    user: Mapped[User | None] = relationship(lazy="joined")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (
        Index("idx_students_school", "school_id"),
        Index("idx_students_household", "household_id"),
        Index("idx_students_status", "enrollment_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)
    household_id: Mapped[int] = mapped_column(ForeignKey("households.id", ondelete="CASCADE"), nullable=False)

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    preferred_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)
    grade_level: Mapped[str | None] = mapped_column(String(8), nullable=True)
    enrollment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="prospective")

    medical_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    medications: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_school: Mapped[str | None] = mapped_column(String(255), nullable=True)
    student_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    household: Mapped[Household] = relationship(back_populates="students")

    @property
    def full_name(self) -> str:
        first = self.preferred_name or self.first_name
        return f"{first} {self.last_name}"
