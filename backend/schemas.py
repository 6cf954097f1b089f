# schemas.py
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, List, Optional, Literal

QuestionType = Literal["text", "single-choice", "multiple-choice", "rating", "yes-no"]
SurveyStatus = Literal["active", "paused", "completed"]

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class QuestionCreate(CamelModel):
    text: str
    type: QuestionType = "text"
    options: Optional[List[str]] = None
    required: bool = True
    order_index: Optional[int] = Field(default=None, alias="order")

class SurveyCreate(CamelModel):
    title: str
    description: Optional[str] = None
    reward: float = Field(default=0.0, ge=0)
    max_respondents: int = Field(..., gt=0, alias="maxRespondents")
    expires_at: datetime = Field(..., alias="expiresAt")
    questions: List[QuestionCreate] = Field(..., min_length=1)

class MySurveyCreate(CamelModel):
    title: str
    description: Optional[str] = None
    max_respondents: Optional[int] = Field(default=None, gt=0, alias="maxRespondents")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    questions: List[QuestionCreate] = Field(..., min_length=1)

class StatusUpdate(BaseModel):
    status: SurveyStatus

class SubmitResponse(CamelModel):
    survey_id: int = Field(..., alias="surveyId")
    # shape is checked by the normalizer, not by pydantic
    answers: Any
    respondent_ref: Optional[str] = Field(default=None, alias="respondentRef")
    tz_offset_minutes: int = Field(default=0, ge=-14 * 60, le=14 * 60, alias="tzOffsetMinutes")

class ShareLinkSubmit(CamelModel):
    answers: Any
    respondent_name: Optional[str] = Field(default=None, alias="respondentName")
    respondent_email: Optional[str] = Field(default=None, alias="respondentEmail")
    tz_offset_minutes: int = Field(default=0, ge=-14 * 60, le=14 * 60, alias="tzOffsetMinutes")

class RespondentCreate(CamelModel):
    full_name: str = Field(..., alias="fullName")
    email: str
    phone: Optional[str] = None
    referral_code: Optional[str] = Field(default=None, alias="referralCode")

    @field_validator("full_name", "email")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v
