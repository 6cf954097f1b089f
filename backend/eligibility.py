"""Eligibility rules for accepting a submission.

Checks run in a fixed order and stop at the first failure:

1. survey exists
2. survey is active
3. survey has not expired
4. survey has an open slot
5. respondent has no response for the survey yet
6. every required question has a non-empty answer

Checks 1-4 read shared mutable state; the ledger runs them again inside its
transaction. 5 and 6 are pure checks against already-fetched data.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select, exists
from sqlalchemy.orm import Session

from errors import (
    SurveyNotFound, SurveyInactive, SurveyExpired, SurveyFull,
    DuplicateResponse, MissingRequiredAnswer,
)
from models import Survey, Question, Response
from normalizer import CanonicalAnswers, is_blank


def now_utc() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def check_survey_open(survey: Optional[Survey], now: Optional[datetime] = None) -> Survey:
    """Run checks 1-4 against a survey snapshot and return it."""
    if survey is None:
        raise SurveyNotFound()
    if survey.status != "active":
        raise SurveyInactive()
    now = now or now_utc()
    if now > as_utc(survey.expires_at):
        raise SurveyExpired()
    if survey.current_respondents >= survey.max_respondents:
        raise SurveyFull()
    return survey


def is_open(survey: Optional[Survey], now: Optional[datetime] = None) -> bool:
    try:
        check_survey_open(survey, now)
    except (SurveyNotFound, SurveyInactive, SurveyExpired, SurveyFull):
        return False
    return True


def check_eligibility(survey: Optional[Survey], already_responded: bool, now: Optional[datetime] = None) -> Survey:
    """Run checks 1-5.

    Args:
        survey: snapshot read at submission time, or None if it does not exist.
        already_responded: whether a Response exists for (survey, respondent).
        now: evaluation time, defaults to the current UTC time.

    Raises:
        SurveyNotFound, SurveyInactive, SurveyExpired, SurveyFull, DuplicateResponse
    """
    check_survey_open(survey, now)
    if already_responded:
        raise DuplicateResponse()
    return survey


def check_required_answers(questions: Iterable[Question], answers: CanonicalAnswers) -> None:
    """Check 6: required questions must carry a non-empty answer."""
    for q in sorted(questions, key=lambda q: q.order_index):
        if q.required and is_blank(answers.get(str(q.id))):
            raise MissingRequiredAnswer(q.id)


def has_responded(db: Session, survey_id: int, respondent_id: Optional[int]) -> bool:
    if respondent_id is None:
        return False
    return db.execute(
        select(exists().where(Response.survey_id == survey_id, Response.respondent_id == respondent_id))
    ).scalar()
