from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from petition.utils import utcnow


class Base(DeclarativeBase):
    pass


DOCUMENT_STATUSES = ("DRAFT", "FINAL")
DOCUMENT_CATEGORIES = (
    "RESUME_CV", "AWARD_CERTIFICATE", "PUBLICATION", "MEDIA_COVERAGE", "PATENT",
    "RECOMMENDATION_LETTER", "MEMBERSHIP_CERTIFICATE", "EMPLOYMENT_VERIFICATION",
    "SALARY_DOCUMENTATION", "CITATION_REPORT", "JUDGING_EVIDENCE", "PASSPORT_ID",
    "DEGREE_CERTIFICATE", "PERSONAL_STATEMENT", "PETITION_LETTER", "EXHIBIT_INDEX",
    "BUSINESS_PLAN", "CONTRACT", "OTHER",
)
RELATIONSHIP_TYPES = (
    "ACADEMIC_ADVISOR", "RESEARCH_COLLABORATOR", "INDUSTRY_COLLEAGUE", "SUPERVISOR",
    "MENTEE", "CLIENT", "PEER_EXPERT", "OTHER",
)


class Case(Base):
    __tablename__ = "cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    documents: Mapped[list[Document]] = relationship("Document", back_populates="case", cascade="all, delete-orphan")
    recommenders: Mapped[list[Recommender]] = relationship("Recommender", back_populates="case", cascade="all, delete-orphan")
    profile: Mapped[CaseProfile | None] = relationship("CaseProfile", back_populates="case", uselist=False, cascade="all, delete-orphan")
    artifacts: Mapped[list[AnalysisArtifact]] = relationship("AnalysisArtifact", back_populates="case", cascade="all, delete-orphan")


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="TEXT")  # MARKDOWN | DOCX | PDF | TEXT
    source: Mapped[str] = mapped_column(String(30), default="USER_UPLOADED")
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")  # DRAFT | FINAL
    category: Mapped[str] = mapped_column(String(50), default="OTHER")
    classification_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    content: Mapped[str] = mapped_column(Text, default="")
    recommender_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("recommenders.id", ondelete="SET NULL"), nullable=True)
    evidence_verification_count: Mapped[int] = mapped_column(Integer, default=0)
    signature_status: Mapped[str] = mapped_column(String(20), default="NONE")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    case: Mapped[Case] = relationship("Case", back_populates="documents")
    verifications: Mapped[list[EvidenceVerification]] = relationship("EvidenceVerification", back_populates="document", cascade="all, delete-orphan")
    routings: Mapped[list[CriterionRouting]] = relationship("CriterionRouting", back_populates="document", cascade="all, delete-orphan")


class EvidenceVerification(Base):
    """One criterion verdict for one document. Never updated; a re-run writes a higher version."""
    __tablename__ = "evidence_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    document_id: Mapped[int] = mapped_column(Integer, ForeignKey("documents.id"), nullable=False, index=True)
    criterion: Mapped[str] = mapped_column(String(5), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    tier: Mapped[int] = mapped_column(Integer, default=5)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    recommendation: Mapped[str] = mapped_column(String(30), nullable=False)
    source: Mapped[str] = mapped_column(String(10), default="bulk")  # bulk | manual
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="verifications")


class CriterionRouting(Base):
    __tablename__ = "criterion_routings"
    __table_args__ = (UniqueConstraint("document_id", "criterion", name="uq_routing_doc_criterion"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    document_id: Mapped[int] = mapped_column(Integer, ForeignKey("documents.id"), nullable=False)
    criterion: Mapped[str] = mapped_column(String(5), nullable=False)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    recommendation: Mapped[str] = mapped_column(String(30), default="")
    auto_routed: Mapped[bool] = mapped_column(Boolean, default=True)
    pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    routed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="routings")


class Recommender(Base):
    __tablename__ = "recommenders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    organization: Mapped[str] = mapped_column(String(300), default="")
    relationship_type: Mapped[str] = mapped_column(String(30), default="OTHER")
    relationship_context: Mapped[str] = mapped_column(Text, default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    phone: Mapped[str] = mapped_column(String(100), default="")
    linkedin: Mapped[str] = mapped_column(String(500), default="")
    country_region: Mapped[str] = mapped_column(String(200), default="")
    bio: Mapped[str] = mapped_column(Text, default="")
    credentials: Mapped[str] = mapped_column(Text, default="")
    criteria_keys_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    case: Mapped[Case] = relationship("Case", back_populates="recommenders")


class CaseProfile(Base):
    __tablename__ = "case_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, unique=True)
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    case: Mapped[Case] = relationship("Case", back_populates="profile")


class AnalysisArtifact(Base):
    """Versioned snapshot of an AI analysis. Only the latest per (case, kind) is read."""
    __tablename__ = "analysis_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    case: Mapped[Case] = relationship("Case", back_populates="artifacts")


class ChecklistSnapshot(Base):
    __tablename__ = "checklist_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[int] = mapped_column(Integer, ForeignKey("cases.id"), nullable=False, index=True)
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    verified_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AgentPrompt(Base):
    __tablename__ = "agent_prompts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    label: Mapped[str] = mapped_column(String(200), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
