from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.enrollsage.models import Base, User
from app.enrollsage.modules.families.models import Household, Student
from app.enrollsage.modules.schools.models import School


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (
        Index("idx_leads_school_stage", "school_id", "stage"),
        Index("idx_leads_email", "email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    source: Mapped[str] = mapped_column(String(32), nullable=False, default="website")
    source_detail: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="inquiry")

    interested_grades: Mapped[list | None] = mapped_column(JSON, nullable=True)
    interested_school_year: Mapped[str | None] = mapped_column(String(16), nullable=True)
    number_of_students: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    last_contacted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    next_follow_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    tour_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    tour_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    tour_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    converted_household_id: Mapped[int | None] = mapped_column(ForeignKey("households.id", ondelete="SET NULL"), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    lost_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assigned_to: Mapped[User | None] = relationship(lazy="joined")
    converted_household: Mapped[Household | None] = relationship(lazy="joined")
    activities: Mapped[list["LeadActivity"]] = relationship(
        back_populates="lead",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="LeadActivity.created_at.desc()",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class LeadActivity(Base):
    __tablename__ = "lead_activities"
    __table_args__ = (Index("idx_lead_activities_lead", "lead_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("leads.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    performed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[Lead] = relationship(back_populates="activities")
    performed_by: Mapped[User | None] = relationship(lazy="joined")


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (
        Index("idx_applications_school_status", "school_id", "status"),
        Index("idx_applications_household", "household_id"),
        Index("idx_applications_student", "student_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id", ondelete="CASCADE"), nullable=False)
    student_id: Mapped[int] = mapped_column(ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    household_id: Mapped[int] = mapped_column(ForeignKey("households.id", ondelete="CASCADE"), nullable=False)
    lead_id: Mapped[int | None] = mapped_column(ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)

    school_year: Mapped[str] = mapped_column(String(16), nullable=False)
    grade_applying_for: Mapped[str] = mapped_column(String(8), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="new")  # new, re_enrollment, transfer
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decision_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decision_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decision_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Application fee (cents)
    application_fee_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)
    application_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    application_fee_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    application_fee_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    interview_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    interview_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    interview_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    waitlist_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    waitlist_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    school: Mapped[School] = relationship(lazy="joined")
    student: Mapped[Student] = relationship(lazy="joined")
    household: Mapped[Household] = relationship(lazy="joined")
    decision_by: Mapped[User | None] = relationship(lazy="joined")
    responses: Mapped[list["ApplicationResponse"]] = relationship(
        back_populates="application", cascade="all, delete-orphan", lazy="selectin"
    )
    documents: Mapped[list["ApplicationDocument"]] = relationship(
        back_populates="application",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ApplicationDocument.uploaded_at.desc()",
    )
    checklist: Mapped[list["ApplicationChecklistItem"]] = relationship(
        back_populates="application",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ApplicationChecklistItem.sort_order",
    )


class ApplicationResponse(Base):
    __tablename__ = "application_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    application_id: Mapped[int] = mapped_column(ForeignKey("applications.id", ondelete="CASCADE"), nullable=False)
    section: Mapped[str] = mapped_column(String(64), nullable=False)  # "family", "academic", "essay"
    answers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    application: Mapped[Application] = relationship(back_populates="responses")


class ApplicationDocument(Base):
    __tablename__ = "application_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    application_id: Mapped[int] = mapped_column(ForeignKey("applications.id", ondelete="CASCADE"), nullable=False)
    document_type: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    application: Mapped[Application] = relationship(back_populates="documents")


class ApplicationChecklistItem(Base):
    __tablename__ = "application_checklists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    application_id: Mapped[int] = mapped_column(ForeignKey("applications.id", ondelete="CASCADE"), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    application: Mapped[Application] = relationship(back_populates="checklist")
