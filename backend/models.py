from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Float, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

STATE_BASELINE = "T0"
STATE_EXPANDED = "T1"

class Survey(Base):
    __tablename__ = "surveys"
    id = Column(String(32), primary_key=True, index=True)
    state = Column(String(2), nullable=False, default=STATE_BASELINE)
    survey_version = Column(String(16), nullable=False)
    language = Column(String(8), nullable=False)
    company_details = Column(JSON, nullable=False)
    sector = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    upgraded_at = Column(DateTime(timezone=True), nullable=True)
    overall_score = Column(Float, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    has_results = Column(Boolean, nullable=False, default=False)
    has_expanded_access = Column(Boolean, nullable=False, default=False)
    # only the salted digest of the retrieval token is ever stored
    token_hash = Column(String(64), unique=True, nullable=False)
    token_created_at = Column(DateTime(timezone=True), nullable=False)
    token_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    answers = relationship("SurveyAnswers", uselist=False, back_populates="survey", cascade="all, delete-orphan")
    results = relationship("SurveyResults", uselist=False, back_populates="survey", cascade="all, delete-orphan")
    private_details = relationship("SurveyPrivateDetails", uselist=False, back_populates="survey", cascade="all, delete-orphan")

class SurveyAnswers(Base):
    __tablename__ = "survey_answers"
    survey_id = Column(String(32), ForeignKey("surveys.id", ondelete="CASCADE"), primary_key=True)
    answers = Column(JSON, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    survey = relationship("Survey", back_populates="answers")

class SurveyResults(Base):
    __tablename__ = "survey_results"
    survey_id = Column(String(32), ForeignKey("surveys.id", ondelete="CASCADE"), primary_key=True)
    dimensions = Column(JSON, nullable=False)
    overall = Column(Float, nullable=False)
    classification = Column(JSON, nullable=False)
    computed_at = Column(DateTime(timezone=True), nullable=False)
    survey = relationship("Survey", back_populates="results")

class SurveyPrivateDetails(Base):
    __tablename__ = "survey_private_details"
    survey_id = Column(String(32), ForeignKey("surveys.id", ondelete="CASCADE"), primary_key=True)
    email = Column(String(320), nullable=False)
    email_domain = Column(String(255), nullable=False)
    contact_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    consent_accepted_at = Column(DateTime(timezone=True), nullable=False)
    policy_version = Column(String(16), nullable=False)
    survey = relationship("Survey", back_populates="private_details")

class EmailSurvey(Base):
    __tablename__ = "email_surveys"
    __table_args__ = (UniqueConstraint("email_hash", "survey_id", name="uq_email_survey"),)
    id = Column(Integer, primary_key=True, index=True)
    email_hash = Column(String(64), index=True, nullable=False)
    survey_id = Column(String(32), ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class MagicLink(Base):
    __tablename__ = "magic_links"
    token_hash = Column(String(64), primary_key=True)
    email_hash = Column(String(64), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    use_count = Column(Integer, nullable=False, default=0)
    first_used_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"
    id = Column(Integer, primary_key=True, index=True)
    event = Column(String(64), index=True, nullable=False)
    survey_id = Column(String(32), nullable=True)
    properties = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
