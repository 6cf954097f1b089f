"""Response ledger: the only write path for responses, counters and balances.

Each operation runs as one atomic unit. The unit takes the write lock when it
begins (``BEGIN IMMEDIATE`` on SQLite, ``SELECT ... FOR UPDATE`` on the survey
row elsewhere), re-validates eligibility against what it just read, then
writes. Counters and balances are only ever changed with in-database
increments (``col = col + n``), never read-modify-write from Python.

On a lock/serialization conflict the whole unit (checks and writes) is run
again from scratch, at most ``LEDGER_MAX_RETRIES`` times.
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from db import WRITE_LOCK
from eligibility import check_eligibility, check_survey_open, check_required_answers, has_responded, now_utc
from errors import (
    SurveyEngineError, SurveyFull, DuplicateResponse, TransientConflict,
    PersistenceFailure, RespondentNotFound, RegistrationError,
)
from models import Survey, Respondent, Response, Referral
from normalizer import CanonicalAnswers, dump_answers

load_dotenv()
LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))
REFERRAL_BONUS = float(os.getenv("REFERRAL_BONUS", "1.0"))
ANON_EMAIL_DOMAIN = os.getenv("ANON_EMAIL_DOMAIN", "anonymous.local")

logger = logging.getLogger(__name__)

T = TypeVar("T")

# driver messages / SQLSTATEs that mean "someone else holds the lock, try again"
_CONFLICT_SQLSTATES = {"40001", "40P01"}
_CONFLICT_MESSAGES = ("database is locked", "database table is locked", "could not serialize",
                      "deadlock", "lock wait timeout")


@dataclass
class SubmitResult:
    response_id: int
    reward_credited: float
    new_balance: float
    respondent_ref: str


def _is_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _CONFLICT_SQLSTATES:
        return True
    msg = str(orig).lower()
    return any(m in msg for m in _CONFLICT_MESSAGES)


def run_atomic(db: Session, unit: Callable[[], T], label: str) -> T:
    """Run ``unit`` inside one locked transaction and commit it.

    Args:
        db (Session): session with no transaction in progress.
        unit (callable): performs the checks and writes; raises a
            SurveyEngineError to abort without writing.
        label (str): used in log lines.

    Returns:
        Whatever ``unit`` returned, after a successful commit.

    Raises:
        SurveyEngineError: the domain error raised by ``unit``.
        TransientConflict: lock conflicts persisted through every retry.
        PersistenceFailure: the storage layer failed for another reason.
        RuntimeError: the session carries pending changes made outside the unit.
    """
    if db.new or db.dirty or db.deleted:
        raise RuntimeError(f"{label}: session holds unflushed changes from outside the unit")
    if db.in_transaction():
        # the unit must open its own transaction so that it begins under the lock;
        # anything already read is discarded, never committed
        db.rollback()
    for attempt in range(1, LEDGER_MAX_RETRIES + 1):
        try:
            db.connection(execution_options={WRITE_LOCK: True})
            result = unit()
            db.commit()
            return result
        except SurveyEngineError:
            db.rollback()
            raise
        except IntegrityError as e:
            # a concurrent unit inserted the same unique key first
            db.rollback()
            logger.warning(f"{label}: integrity conflict on attempt {attempt}/{LEDGER_MAX_RETRIES}: {e.orig}")
        except DBAPIError as e:
            db.rollback()
            if not _is_conflict(e):
                logger.exception(f"{label}: storage failure")
                raise PersistenceFailure() from e
            logger.warning(f"{label}: lock conflict on attempt {attempt}/{LEDGER_MAX_RETRIES}: {e.orig}")
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception(f"{label}: storage failure")
            raise PersistenceFailure() from e
        except BaseException:
            # abandoned mid-flight: nothing of the unit may survive
            db.rollback()
            raise
    logger.error(f"{label}: giving up after {LEDGER_MAX_RETRIES} attempts")
    raise TransientConflict()


def _lock_survey(db: Session, *criteria) -> Optional[Survey]:
    return db.execute(select(Survey).where(*criteria).with_for_update()).scalar_one_or_none()


def _record_response(
    db: Session,
    survey: Survey,
    respondent: Respondent,
    answers: CanonicalAnswers,
    now: datetime,
    tz_offset_minutes: int,
    rewardable: bool,
) -> SubmitResult:
    """Checks 1-6 and the three writes. Must run inside ``run_atomic``."""
    check_eligibility(survey, has_responded(db, survey.id, respondent.id), now)
    check_required_answers(survey.questions, answers)

    bumped = db.execute(
        update(Survey)
        .where(Survey.id == survey.id, Survey.current_respondents < Survey.max_respondents)
        .values(current_respondents=Survey.current_respondents + 1)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount != 1:
        raise SurveyFull()

    reward = float(survey.reward or 0.0) if rewardable and not respondent.is_ephemeral else 0.0
    row = Response(
        survey_id=survey.id,
        respondent_id=respondent.id,
        answers=dump_answers(answers),
        submitted_at=now,
        tz_offset_minutes=tz_offset_minutes,
        reward_granted=reward > 0,
        reward_amount=reward,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        raise DuplicateResponse()

    if reward > 0:
        db.execute(
            update(Respondent)
            .where(Respondent.id == respondent.id)
            .values(balance=Respondent.balance + reward, total_earned=Respondent.total_earned + reward)
            .execution_options(synchronize_session=False)
        )
    new_balance = db.execute(select(Respondent.balance).where(Respondent.id == respondent.id)).scalar_one()
    return SubmitResult(response_id=row.id, reward_credited=reward, new_balance=new_balance,
                        respondent_ref=respondent.ref)


def submit_response(
    db: Session,
    survey_id: int,
    respondent_ref: str,
    answers: CanonicalAnswers,
    tz_offset_minutes: int = 0,
) -> SubmitResult:
    """Record an authenticated respondent's answers and credit the reward.

    Args:
        db (Session): DB session.
        survey_id (int): Survey PK.
        respondent_ref (str): public reference of the registered respondent.
        answers (dict): canonical answer map.
        tz_offset_minutes (int): respondent's local UTC offset at submit time.

    Returns:
        SubmitResult: response id, credited reward, balance after the credit.
    """
    def unit() -> SubmitResult:
        now = now_utc()
        survey = _lock_survey(db, Survey.id == survey_id)
        check_survey_open(survey, now)
        respondent = db.execute(select(Respondent).where(Respondent.ref == respondent_ref)).scalar_one_or_none()
        if respondent is None:
            raise RespondentNotFound()
        return _record_response(db, survey, respondent, answers, now, tz_offset_minutes, rewardable=True)

    result = run_atomic(db, unit, f"submit survey={survey_id} respondent={respondent_ref}")
    logger.info(f"Response {result.response_id} recorded for survey {survey_id} "
                f"(respondent {respondent_ref}, reward {result.reward_credited})")
    return result


def _ephemeral_ref() -> str:
    return f"anon_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def submit_via_share_link(
    db: Session,
    share_code: str,
    answers: CanonicalAnswers,
    respondent_name: Optional[str] = None,
    respondent_email: Optional[str] = None,
    tz_offset_minutes: int = 0,
) -> SubmitResult:
    """Record an unauthenticated submission made through a share link.

    A contact address that already belongs to an identity is treated as that
    identity for the uniqueness check; otherwise an ephemeral respondent is
    created in the same unit. Share-link submissions never credit a reward.
    """
    email = (respondent_email or "").strip().lower() or None

    def unit() -> SubmitResult:
        now = now_utc()
        survey = _lock_survey(db, Survey.share_code == share_code)
        check_survey_open(survey, now)
        respondent = None
        if email:
            respondent = db.execute(select(Respondent).where(Respondent.email == email)).scalar_one_or_none()
        if respondent is None:
            ref = _ephemeral_ref()
            respondent = Respondent(
                ref=ref,
                kind="ephemeral",
                full_name=(respondent_name or "").strip() or "Anonymous",
                email=email or f"{ref}@{ANON_EMAIL_DOMAIN}",
                balance=0.0,
                total_earned=0.0,
            )
            db.add(respondent)
            db.flush()
        return _record_response(db, survey, respondent, answers, now, tz_offset_minutes, rewardable=False)

    result = run_atomic(db, unit, f"share-link submit code={share_code}")
    logger.info(f"Response {result.response_id} recorded via share link {share_code} "
                f"(respondent {result.respondent_ref})")
    return result


def _user_ref() -> str:
    return f"USER{uuid.uuid4().hex[:10].upper()}"


def _referral_code() -> str:
    return uuid.uuid4().hex[:8].upper()


def register_respondent(
    db: Session,
    full_name: str,
    email: str,
    phone: Optional[str] = None,
    referral_code: Optional[str] = None,
) -> Respondent:
    """Create a registered respondent and pay the referral bonus, atomically.

    An unknown referral code is ignored. The referrer's balance and lifetime
    earnings are incremented in the same unit that inserts the new identity.
    """
    email = email.strip().lower()
    code = (referral_code or "").strip().upper() or None

    def unit() -> Respondent:
        if db.execute(select(Respondent.id).where(Respondent.email == email)).first():
            raise RegistrationError("User with this email already exists")
        referrer = None
        if code:
            referrer = db.execute(select(Respondent).where(Respondent.referral_code == code)).scalar_one_or_none()
        respondent = Respondent(
            ref=_user_ref(),
            kind="registered",
            full_name=full_name.strip(),
            email=email,
            phone=phone,
            referral_code=_referral_code(),
            referred_by_id=referrer.id if referrer else None,
        )
        db.add(respondent)
        db.flush()
        if referrer is not None:
            db.add(Referral(referrer_id=referrer.id, referred_id=respondent.id, earned=REFERRAL_BONUS))
            db.execute(
                update(Respondent)
                .where(Respondent.id == referrer.id)
                .values(balance=Respondent.balance + REFERRAL_BONUS,
                        total_earned=Respondent.total_earned + REFERRAL_BONUS)
                .execution_options(synchronize_session=False)
            )
            db.flush()
        return respondent

    respondent = run_atomic(db, unit, f"register {email}")
    logger.info(f"Registered respondent {respondent.ref}"
                + (f" referred by code {code}" if respondent.referred_by_id else ""))
    return respondent
