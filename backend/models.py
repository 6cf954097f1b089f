import json
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Float, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

QUESTION_TYPES = ("text", "single-choice", "multiple-choice", "rating", "yes-no")
SURVEY_STATUSES = ("active", "paused", "completed")

class Respondent(Base):
    __tablename__ = "respondents"
    id = Column(Integer, primary_key=True, index=True)
    ref = Column(String(64), unique=True, index=True, nullable=False)
    kind = Column(String(20), nullable=False, default="registered")  # registered | ephemeral
    full_name = Column(String(255), nullable=False, default="Anonymous")
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(32), nullable=True)
    balance = Column(Float, nullable=False, default=0.0)
    total_earned = Column(Float, nullable=False, default=0.0)
    referral_code = Column(String(32), unique=True, index=True, nullable=True)
    referred_by_id = Column(Integer, ForeignKey("respondents.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    responses = relationship("Response", back_populates="respondent", cascade="all, delete-orphan")

    @property
    def is_ephemeral(self) -> bool:
        return self.kind == "ephemeral"

class Referral(Base):
    __tablename__ = "referrals"
    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey("respondents.id", ondelete="CASCADE"), index=True, nullable=False)
    referred_id = Column(Integer, ForeignKey("respondents.id", ondelete="CASCADE"), unique=True, nullable=False)
    earned = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    referred = relationship("Respondent", foreign_keys=[referred_id])

class Survey(Base):
    __tablename__ = "surveys"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    reward = Column(Float, nullable=False, default=0.0)
    max_respondents = Column(Integer, nullable=False)
    current_respondents = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    share_code = Column(String(32), unique=True, index=True, nullable=True)
    survey_type = Column(String(20), nullable=False, default="paid")  # paid | user
    created_by_id = Column(Integer, ForeignKey("respondents.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    questions = relationship("Question", back_populates="survey", cascade="all, delete-orphan",
                             order_by="Question.order_index")
    responses = relationship("Response", back_populates="survey", cascade="all, delete-orphan")

class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (UniqueConstraint("survey_id", "order_index", name="uq_question_order"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    type = Column(String(50), nullable=False, default="text")
    options = Column(Text, nullable=True)  # JSON list, absent for free text
    required = Column(Boolean, nullable=False, default=True)
    survey = relationship("Survey", back_populates="questions")

    @property
    def option_list(self) -> list[str]:
        if not self.options:
            return []
        try:
            return list(json.loads(self.options))
        except (TypeError, ValueError):
            return []

class Response(Base):
    __tablename__ = "responses"
    __table_args__ = (UniqueConstraint("survey_id", "respondent_id", name="uq_response_survey_respondent"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    respondent_id = Column(Integer, ForeignKey("respondents.id", ondelete="CASCADE"), index=True, nullable=False)
    answers = Column(Text, nullable=False)  # JSON canonical answer map
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    tz_offset_minutes = Column(Integer, nullable=False, default=0)
    reward_granted = Column(Boolean, nullable=False, default=False)
    reward_amount = Column(Float, nullable=False, default=0.0)
    survey = relationship("Survey", back_populates="responses")
    respondent = relationship("Respondent", back_populates="responses")
