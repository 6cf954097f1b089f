import os, json, uuid, logging
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional
from fastapi import FastAPI, Depends, HTTPException, Query, Request, Response as HTTPResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from dotenv import load_dotenv
from db import Base, engine, get_db
from models import Survey, Question, Response, Respondent, Referral
from schemas import *
from security import verify_admin, require_respondent_ref
from errors import SurveyEngineError
from eligibility import check_survey_open, is_open, as_utc, now_utc
from normalizer import normalize_answers, load_stored_answers
from analytics import aggregate, date_range_bounds, filter_by_date
from exporter import export_responses
import ledger

load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

DEFAULT_MAX_RESPONDENTS = int(os.getenv("DEFAULT_MAX_RESPONDENTS", "100"))
DEFAULT_SURVEY_DAYS = int(os.getenv("DEFAULT_SURVEY_DAYS", "30"))

app = FastAPI(title="Survey Response Engine API")

origins = os.getenv("ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)

@app.exception_handler(SurveyEngineError)
async def engine_error_handler(request: Request, exc: SurveyEngineError):
    """Render domain errors as {kind, detail} with their mapped status code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

ExportFormat = Literal["csv", "table-document", "word-table"]
DateRange = Literal["all", "week", "month"]
CHOICE_DEFAULTS = {"yes-no": ["Yes", "No"], "rating": ["1", "2", "3", "4", "5"]}

# ------------------------
# Helpers
# ------------------------
def build_questions(items: list[QuestionCreate]) -> list[Question]:
    """Validate question input and build ORM rows.

    Display order comes from `order` when given, else from list position, and
    must be unique within the survey. Choice, rating and yes-no questions need
    options (rating and yes-no fall back to their standard scales).

    Raises:
        HTTPException: 400 on empty text, duplicate order or missing options.
    """
    out, seen = [], set()
    for pos, q in enumerate(items):
        text = (q.text or "").strip()
        if not text:
            raise HTTPException(400, f"Question #{pos + 1} text is required")
        order = q.order_index if q.order_index is not None else pos
        if order in seen:
            raise HTTPException(400, f"Duplicate question order {order}")
        seen.add(order)
        options = [o.strip() for o in (q.options or []) if o and o.strip()]
        if q.type == "text":
            options = []
        elif not options:
            options = list(CHOICE_DEFAULTS.get(q.type, []))
            if not options:
                raise HTTPException(400, f"Question '{text}' needs at least one option")
        out.append(Question(
            text=text,
            type=q.type,
            options=json.dumps(options) if options else None,
            required=q.required,
            order_index=order,
        ))
    return out

def persist_survey(db: Session, make: Callable[[], Survey]) -> Survey:
    """Insert a survey built by `make`, regenerating it if its share code collides."""
    for _ in range(5):
        survey = make()
        db.add(survey)
        try:
            db.commit()
            return survey
        except IntegrityError:
            db.rollback()
            continue
    raise HTTPException(500, "Failed to generate a unique share code")

def new_share_code() -> str:
    return uuid.uuid4().hex[:10]

def question_out(q: Question) -> dict:
    return {
        "id": q.id,
        "text": q.text,
        "type": q.type,
        "options": q.option_list or None,
        "required": q.required,
        "order": q.order_index,
    }

def survey_out(s: Survey) -> dict:
    return {
        "id": s.id,
        "title": s.title,
        "description": s.description,
        "reward": s.reward,
        "maxRespondents": s.max_respondents,
        "currentRespondents": s.current_respondents,
        "status": s.status,
        "expiresAt": as_utc(s.expires_at),
        "shareCode": s.share_code,
        "surveyType": s.survey_type,
        "createdAt": s.created_at,
    }

def response_out(r: Response) -> dict:
    person = r.respondent
    return {
        "id": r.id,
        "answers": load_stored_answers(r.answers),
        "submittedAt": as_utc(r.submitted_at),
        "rewardGranted": r.reward_granted,
        "respondent": {
            "ref": person.ref,
            "fullName": person.full_name,
            "email": person.email,
        } if person else None,
    }

def get_survey_or_404(db: Session, survey_id: int) -> Survey:
    s = db.get(Survey, survey_id)
    if not s:
        raise HTTPException(404, "Survey not found")
    return s

def has_responses(db: Session, survey_id: int) -> bool:
    return db.execute(
        select(func.count()).select_from(Response).where(Response.survey_id == survey_id)
    ).scalar_one() > 0

def load_responses(db: Session, survey_id: int) -> list[Response]:
    return db.execute(
        select(Response)
        .options(selectinload(Response.respondent))
        .where(Response.survey_id == survey_id)
        .order_by(Response.submitted_at.desc(), Response.id.desc())
    ).scalars().all()

def aggregate_survey(db: Session, survey: Survey, date_range: str,
                     start: Optional[datetime], end: Optional[datetime]) -> dict:
    """Read the survey's responses (no lock) and aggregate the selected window."""
    range_start, range_end = date_range_bounds(date_range, now_utc())
    responses = filter_by_date(load_responses(db, survey.id), start or range_start, end or range_end)
    out = aggregate(survey.questions, responses)
    out["survey"] = {"id": survey.id, "title": survey.title}
    return out

def export_survey(db: Session, survey: Survey, fmt: str) -> HTTPResponse:
    f = export_responses(survey, survey.questions, load_responses(db, survey.id), fmt)
    return HTTPResponse(content=f.content, media_type=f.media_type,
                        headers={"Content-Disposition": f"attachment; filename={f.filename}"})

def get_respondent(db: Session, ref: str) -> Respondent:
    r = db.execute(select(Respondent).where(Respondent.ref == ref)).scalar_one_or_none()
    if not r:
        raise HTTPException(404, "Respondent not found")
    return r

def get_creator(db: Session, ref: str) -> Respondent:
    r = get_respondent(db, ref)
    if r.is_ephemeral:
        raise HTTPException(403, "Anonymous respondents cannot create surveys")
    return r

def get_owned_survey(db: Session, survey_id: int, owner: Respondent) -> Survey:
    s = db.execute(
        select(Survey).where(Survey.id == survey_id, Survey.created_by_id == owner.id, Survey.survey_type == "user")
    ).scalar_one_or_none()
    if not s:
        raise HTTPException(404, "Survey not found")
    return s

def open_paid_surveys(db: Session, respondent: Respondent) -> list[Survey]:
    """Paid surveys that are open right now and that `respondent` has not answered."""
    answered = select(Response.survey_id).where(Response.respondent_id == respondent.id)
    rows = db.execute(
        select(Survey)
        .where(Survey.survey_type == "paid", Survey.status == "active", Survey.id.not_in(answered))
        .order_by(Survey.id.desc())
    ).scalars().all()
    now = now_utc()
    return [s for s in rows if is_open(s, now)]

def completed_responses(db: Session, respondent: Respondent, limit: Optional[int] = None) -> list[Response]:
    stmt = (
        select(Response)
        .options(selectinload(Response.survey))
        .where(Response.respondent_id == respondent.id)
        .order_by(Response.submitted_at.desc(), Response.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return db.execute(stmt).scalars().all()

@app.get("/health")
def health():
    """Basic readiness probe.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

# ------------------------
# Admin: paid surveys
# ------------------------
@app.post("/admin/surveys", dependencies=[Depends(verify_admin)], status_code=201)
def create_survey(payload: SurveyCreate, db: Session = Depends(get_db)):
    """Create a paid survey with its questions; status starts `active`.

    Args:
        payload (SurveyCreate): title, description, reward, maxRespondents, expiresAt, questions[].
        db (Session): DB session.

    Returns:
        dict: the created survey with its questions.
    """
    title = (payload.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    questions = build_questions(payload.questions)

    survey = Survey(
        title=title,
        description=(payload.description or "").strip() or None,
        reward=payload.reward,
        max_respondents=payload.max_respondents,
        current_respondents=0,
        status="active",
        expires_at=as_utc(payload.expires_at),
        survey_type="paid",
        questions=questions,
    )
    db.add(survey)
    db.commit()
    logger.info(f"Created paid survey {survey.id} ({len(questions)} questions, reward {survey.reward})")
    return {**survey_out(survey), "questions": [question_out(q) for q in survey.questions]}

@app.get("/admin/surveys", dependencies=[Depends(verify_admin)])
def list_surveys(db: Session = Depends(get_db)):
    """List all surveys with their counters, newest first."""
    rows = db.execute(select(Survey).order_by(Survey.id.desc())).scalars().all()
    return [survey_out(s) for s in rows]

@app.get("/admin/surveys/{survey_id}", dependencies=[Depends(verify_admin)])
def survey_detail(survey_id: int, db: Session = Depends(get_db)):
    """Get a survey with its questions in display order.

    Raises:
        HTTPException: 404 if survey not found.
    """
    s = get_survey_or_404(db, survey_id)
    return {**survey_out(s), "questions": [question_out(q) for q in s.questions]}

@app.patch("/admin/surveys/{survey_id}", dependencies=[Depends(verify_admin)])
def update_survey_status(survey_id: int, body: StatusUpdate, db: Session = Depends(get_db)):
    s = get_survey_or_404(db, survey_id)
    s.status = body.status
    db.commit()
    return survey_out(s)

@app.delete("/admin/surveys/{survey_id}", dependencies=[Depends(verify_admin)])
def delete_survey(survey_id: int, db: Session = Depends(get_db)):
    """Hard-delete a survey and all related rows.

    Raises:
        HTTPException: 404 if survey not found.
    """
    s = get_survey_or_404(db, survey_id)
    db.delete(s)
    db.commit()
    return {"ok": True}

# ------------------------
# Admin: manage questions
# ------------------------
@app.post("/admin/surveys/{survey_id}/questions", dependencies=[Depends(verify_admin)])
def add_question(survey_id: int, q: QuestionCreate, db: Session = Depends(get_db)):
    """Add a question to a survey that has not received any response yet.

    Raises:
        HTTPException: 404 if survey not found; 409 once responses exist;
            400 on invalid question or duplicate order.
    """
    s = get_survey_or_404(db, survey_id)
    if has_responses(db, survey_id):
        raise HTTPException(409, "Questions cannot change once the survey has responses")
    if q.order_index is None:
        q.order_index = max((x.order_index for x in s.questions), default=-1) + 1
    if any(x.order_index == q.order_index for x in s.questions):
        raise HTTPException(400, f"Duplicate question order {q.order_index}")
    row = build_questions([q])[0]
    row.survey_id = survey_id
    db.add(row)
    db.commit()
    return question_out(row)

@app.delete("/admin/questions/{question_id}", dependencies=[Depends(verify_admin)])
def delete_question(question_id: int, db: Session = Depends(get_db)):
    """Delete a question from a survey that has not received any response yet.

    Raises:
        HTTPException: 404 if question not found; 409 once responses exist.
    """
    q = db.get(Question, question_id)
    if not q:
        raise HTTPException(status_code=404, detail="Question not found")
    if has_responses(db, q.survey_id):
        raise HTTPException(409, "Questions cannot change once the survey has responses")
    db.delete(q)
    db.commit()
    return {"ok": True}

# ------------------------
# Admin: view/aggregate/export responses
# ------------------------
@app.get("/admin/stats", dependencies=[Depends(verify_admin)])
def admin_stats(db: Session = Depends(get_db)):
    """Platform totals for the operator dashboard."""
    def count(stmt):
        return db.execute(stmt).scalar_one()
    return {
        "totalUsers": count(select(func.count()).select_from(Respondent).where(Respondent.kind == "registered")),
        "totalSurveys": count(select(func.count()).select_from(Survey)),
        "activeSurveys": count(select(func.count()).select_from(Survey).where(Survey.status == "active")),
        "totalResponses": count(select(func.count()).select_from(Response)),
        "totalRewarded": count(select(func.coalesce(func.sum(Response.reward_amount), 0.0))),
    }

@app.get("/admin/surveys/{survey_id}/responses", dependencies=[Depends(verify_admin)])
def survey_responses(survey_id: int, db: Session = Depends(get_db)):
    """Return the survey's questions and its responses, newest first."""
    s = get_survey_or_404(db, survey_id)
    return {
        "survey": {"id": s.id, "title": s.title},
        "questions": [question_out(q) for q in s.questions],
        "responses": [response_out(r) for r in load_responses(db, survey_id)],
    }

@app.get("/admin/surveys/{survey_id}/aggregate", dependencies=[Depends(verify_admin)])
def survey_aggregate(
    survey_id: int,
    date_range: DateRange = Query("all", alias="dateRange"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Per-question distributions, timeline, hourly histogram and top answers."""
    return aggregate_survey(db, get_survey_or_404(db, survey_id), date_range, start, end)

@app.get("/admin/surveys/{survey_id}/export", dependencies=[Depends(verify_admin)])
def survey_export(survey_id: int, fmt: ExportFormat = Query("csv", alias="format"),
                  db: Session = Depends(get_db)):
    """Export responses as csv, table-document (PDF) or word-table (DOCX) attachment."""
    return export_survey(db, get_survey_or_404(db, survey_id), fmt)

# ------------------------
# Respondents: registration, balance, available surveys
# ------------------------
@app.post("/respondents", status_code=201)
def register(body: RespondentCreate, db: Session = Depends(get_db)):
    """Register a respondent; a valid referral code credits the referrer's bonus.

    Returns:
        dict: {"message", "respondentRef", "referralCode"}
    """
    r = ledger.register_respondent(db, body.full_name, body.email, body.phone, body.referral_code)
    return {"message": "User created successfully", "respondentRef": r.ref, "referralCode": r.referral_code}

@app.get("/respondents/{ref}")
def respondent_summary(ref: str, caller: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    """Balance, lifetime earnings and referral stats of the calling respondent."""
    if caller != ref:
        raise HTTPException(403, "Forbidden")
    r = get_respondent(db, ref)
    referrals = db.execute(
        select(Referral).where(Referral.referrer_id == r.id).order_by(Referral.created_at.desc())
    ).scalars().all()
    return {
        "ref": r.ref,
        "fullName": r.full_name,
        "email": r.email,
        "kind": r.kind,
        "balance": r.balance,
        "totalEarned": r.total_earned,
        "referralCode": r.referral_code,
        "totalReferrals": len(referrals),
        "referralEarnings": sum(x.earned for x in referrals),
        "referrals": [
            {"id": x.id, "name": x.referred.full_name if x.referred else None,
             "date": x.created_at, "earned": x.earned}
            for x in referrals
        ],
    }

@app.get("/dashboard/stats")
def dashboard_stats(ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    """Headline numbers for the caller's dashboard.

    Returns:
        dict: {"balance", "totalEarned", "surveysCompleted", "availableSurveys",
            "totalReferrals", "recentEarnings": [{surveyTitle, amount, date}]}
    """
    r = get_respondent(db, ref)
    completed = db.execute(
        select(func.count()).select_from(Response).where(Response.respondent_id == r.id)
    ).scalar_one()
    referrals = db.execute(
        select(func.count()).select_from(Referral).where(Referral.referrer_id == r.id)
    ).scalar_one()
    return {
        "balance": r.balance,
        "totalEarned": r.total_earned,
        "surveysCompleted": completed,
        "availableSurveys": len(open_paid_surveys(db, r)),
        "totalReferrals": referrals,
        "recentEarnings": [
            {"surveyTitle": x.survey.title, "amount": x.reward_amount, "date": as_utc(x.submitted_at)}
            for x in completed_responses(db, r, limit=5)
        ],
    }

@app.get("/surveys")
def available_surveys(ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    """Open paid surveys the caller has not answered yet."""
    rows = open_paid_surveys(db, get_respondent(db, ref))
    return [{**survey_out(s), "questions": [question_out(q) for q in s.questions]} for s in rows]

@app.get("/surveys/completed")
def completed_surveys(ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    """Surveys the caller has answered, newest first."""
    rows = completed_responses(db, get_respondent(db, ref))
    items = [
        {
            "id": x.survey.id,
            "title": x.survey.title,
            "description": x.survey.description,
            "reward": x.survey.reward,
            "completedAt": as_utc(x.submitted_at),
            "rewarded": x.reward_granted,
            "amount": x.reward_amount,
        }
        for x in rows
    ]
    return {"completedSurveys": items, "count": len(items)}

@app.post("/responses")
def submit_response(body: SubmitResponse, ref: str = Depends(require_respondent_ref),
                    db: Session = Depends(get_db)):
    """Submit the caller's answers to a survey and credit its reward.

    Args:
        body (SubmitResponse): {surveyId, answers, respondentRef?, tzOffsetMinutes?}
        ref (str): identity resolved by the auth layer; `respondentRef` in the
            body, when present, must name the same respondent.
        db (Session): DB session.

    Returns:
        dict: {"responseId", "rewardCredited", "newBalance", "message"}

    Raises:
        HTTPException: 401 without a respondent identity (anonymous answers
            go through share links); 403 when the body names someone else.
        SurveyEngineError: any eligibility or ledger failure.
    """
    if body.respondent_ref is not None and body.respondent_ref != ref:
        raise HTTPException(403, "Forbidden")
    answers = normalize_answers(body.answers)
    result = ledger.submit_response(db, body.survey_id, ref, answers, body.tz_offset_minutes)
    return {
        "message": "Survey completed successfully!",
        "responseId": result.response_id,
        "rewardCredited": result.reward_credited,
        "newBalance": result.new_balance,
    }

# ------------------------
# Self-service surveys
# ------------------------
@app.post("/my-surveys", status_code=201)
def create_my_survey(payload: MySurveyCreate, ref: str = Depends(require_respondent_ref),
                     db: Session = Depends(get_db)):
    """Create an unpaid survey owned by the caller, reachable through a share code."""
    owner = get_creator(db, ref)
    title = (payload.title or "").strip()
    if not title:
        raise HTTPException(400, "Title is required")
    build_questions(payload.questions)
    expires_at = as_utc(payload.expires_at) if payload.expires_at else now_utc() + timedelta(days=DEFAULT_SURVEY_DAYS)

    def make() -> Survey:
        return Survey(
            title=title,
            description=(payload.description or "").strip() or None,
            reward=0.0,
            max_respondents=payload.max_respondents or DEFAULT_MAX_RESPONDENTS,
            current_respondents=0,
            status="active",
            expires_at=expires_at,
            survey_type="user",
            share_code=new_share_code(),
            created_by_id=owner.id,
            questions=build_questions(payload.questions),
        )

    survey = persist_survey(db, make)
    logger.info(f"Respondent {owner.ref} created survey {survey.id} with share code {survey.share_code}")
    return {**survey_out(survey), "questions": [question_out(q) for q in survey.questions]}

@app.get("/my-surveys")
def list_my_surveys(ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    owner = get_creator(db, ref)
    rows = db.execute(
        select(Survey).where(Survey.created_by_id == owner.id, Survey.survey_type == "user")
        .order_by(Survey.id.desc())
    ).scalars().all()
    return [survey_out(s) for s in rows]

@app.get("/my-surveys/{survey_id}")
def my_survey_detail(survey_id: int, ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    s = get_owned_survey(db, survey_id, get_creator(db, ref))
    return {
        **survey_out(s),
        "questions": [question_out(q) for q in s.questions],
        "responses": [response_out(r) for r in load_responses(db, s.id)],
    }

@app.patch("/my-surveys/{survey_id}")
def update_my_survey(survey_id: int, body: StatusUpdate, ref: str = Depends(require_respondent_ref),
                     db: Session = Depends(get_db)):
    s = get_owned_survey(db, survey_id, get_creator(db, ref))
    s.status = body.status
    db.commit()
    return survey_out(s)

@app.delete("/my-surveys/{survey_id}")
def delete_my_survey(survey_id: int, ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    s = get_owned_survey(db, survey_id, get_creator(db, ref))
    db.delete(s)
    db.commit()
    return {"ok": True}

@app.get("/my-surveys/{survey_id}/aggregate")
def my_survey_aggregate(
    survey_id: int,
    date_range: DateRange = Query("all", alias="dateRange"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    ref: str = Depends(require_respondent_ref),
    db: Session = Depends(get_db),
):
    s = get_owned_survey(db, survey_id, get_creator(db, ref))
    return aggregate_survey(db, s, date_range, start, end)

@app.get("/my-surveys/{survey_id}/export")
def my_survey_export(survey_id: int, fmt: ExportFormat = Query("csv", alias="format"),
                     ref: str = Depends(require_respondent_ref), db: Session = Depends(get_db)):
    s = get_owned_survey(db, survey_id, get_creator(db, ref))
    return export_survey(db, s, fmt)

# ------------------------
# Public: share links
# ------------------------
@app.get("/s/{code}")
def load_shared_survey(code: str, db: Session = Depends(get_db)):
    """Resolve a share code to the public survey content.

    Raises:
        SurveyEngineError: SurveyNotFound, SurveyInactive, SurveyExpired or SurveyFull.
    """
    s = db.execute(select(Survey).where(Survey.share_code == code)).scalar_one_or_none()
    check_survey_open(s)
    return {
        "id": s.id,
        "title": s.title,
        "description": s.description,
        "questions": [question_out(q) for q in s.questions],
    }

@app.post("/s/{code}/responses")
def submit_shared_response(code: str, body: ShareLinkSubmit, db: Session = Depends(get_db)):
    """Submit answers through a share link without signing in.

    Returns:
        dict: {"message", "responseId"}
    """
    answers = normalize_answers(body.answers)
    result = ledger.submit_via_share_link(
        db, code, answers,
        respondent_name=body.respondent_name,
        respondent_email=body.respondent_email,
        tz_offset_minutes=body.tz_offset_minutes,
    )
    return {"message": "Response submitted successfully", "responseId": result.response_id}
