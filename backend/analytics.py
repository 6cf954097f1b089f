"""Aggregation over a survey's stored responses.

All functions are pure: they take already-loaded questions/responses and never
touch the session, so they can run against any (possibly stale) snapshot.
Historical answers are never re-validated; anything unparsable is skipped and
left out of the denominators.
"""
from __future__ import annotations

import calendar
import math
import os
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from dotenv import load_dotenv

from eligibility import as_utc
from models import Question, Response
from normalizer import CanonicalAnswers, answer_values, load_stored_answers

load_dotenv()
TIMELINE_MAX_BUCKETS = int(os.getenv("TIMELINE_MAX_BUCKETS", "14"))
TOP_ANSWERS_LIMIT = int(os.getenv("TOP_ANSWERS_LIMIT", "20"))
TOP_PER_QUESTION = 3
RATING_MIN, RATING_MAX = 1, 5


def _round_half_up(x: float, ndigits: int = 0) -> float:
    factor = 10 ** ndigits
    return math.floor(x * factor + 0.5) / factor


def percentage(count: int, total: int) -> int:
    """Whole-number share of ``count`` in ``total``; halves round up.

    Buckets are rounded independently, so a question's percentages need not
    sum to exactly 100.
    """
    if total <= 0:
        return 0
    return int(_round_half_up((count / total) * 100))


def local_time(response: Response) -> datetime:
    """Submission time on the respondent's wall clock."""
    return as_utc(response.submitted_at) + timedelta(minutes=response.tz_offset_minutes or 0)


def distribution(question_id: str, answer_maps: Iterable[CanonicalAnswers]) -> list[dict]:
    """Answer-frequency distribution for one question.

    Multi-select answers count every element, so the denominator is the number
    of answers given, not the number of responses.

    Returns:
        list[dict]: ``[{value, count, pct}]`` sorted by count descending,
        ties kept in first-seen order.
    """
    counts: dict[str, int] = {}
    for answers in answer_maps:
        for value in answer_values(answers.get(question_id)):
            if not isinstance(value, str) or not value.strip():
                continue
            counts[value] = counts.get(value, 0) + 1
    total = sum(counts.values())
    data = [{"value": v, "count": c, "pct": percentage(c, total)} for v, c in counts.items()]
    return sorted(data, key=lambda d: d["count"], reverse=True)


def parse_rating(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        try:
            n = int(value.strip())
        except ValueError:
            return None
    else:
        return None
    if RATING_MIN <= n <= RATING_MAX:
        return n
    return None


def rating_average(question_id: str, answer_maps: Iterable[CanonicalAnswers]) -> float:
    """Mean of the valid 1-5 ratings, one decimal; 0 when there are none."""
    ratings = []
    for answers in answer_maps:
        n = parse_rating(answers.get(question_id))
        if n is not None:
            ratings.append(n)
    if not ratings:
        return 0.0
    return _round_half_up(sum(ratings) / len(ratings), 1)


def timeline(responses: Iterable[Response], max_buckets: int = TIMELINE_MAX_BUCKETS) -> list[dict]:
    """Responses per local calendar day, oldest first, most recent days only."""
    daily: dict = {}
    for r in responses:
        day = local_time(r).date()
        daily[day] = daily.get(day, 0) + 1
    buckets = [{"date": day.isoformat(), "responses": n} for day, n in sorted(daily.items())]
    return buckets[-max_buckets:] if max_buckets > 0 else []


def hourly(responses: Iterable[Response]) -> list[dict]:
    counts = [0] * 24
    for r in responses:
        counts[local_time(r).hour] += 1
    return [{"hour": h, "label": f"{h}:00", "responses": n} for h, n in enumerate(counts)]


def top_answers(per_question: Sequence[dict], limit: int = TOP_ANSWERS_LIMIT) -> list[dict]:
    """Merge each question's top 3 answers and keep the ``limit`` most frequent."""
    merged = []
    for q in per_question:
        for item in q["data"][:TOP_PER_QUESTION]:
            merged.append({"questionId": q["questionId"], **item})
    merged.sort(key=lambda d: d["count"], reverse=True)
    return merged[:limit]


def _minus_one_month(now: datetime) -> datetime:
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def date_range_bounds(name: str, now: datetime) -> tuple[Optional[datetime], Optional[datetime]]:
    """Translate a named range (``all``/``week``/``month``) into (start, end)."""
    if name == "week":
        return now - timedelta(days=7), None
    if name == "month":
        return _minus_one_month(now), None
    if name == "all":
        return None, None
    raise ValueError(f"Unknown date range: {name}")


def filter_by_date(responses: Iterable[Response], start: Optional[datetime] = None,
                   end: Optional[datetime] = None) -> list[Response]:
    out = []
    for r in responses:
        ts = as_utc(r.submitted_at)
        if start is not None and ts < as_utc(start):
            continue
        if end is not None and ts > as_utc(end):
            continue
        out.append(r)
    return out


def aggregate(questions: Sequence[Question], responses: Sequence[Response]) -> dict:
    """Build the full analytics payload for a survey.

    Args:
        questions: the survey's questions (any order; output follows display order).
        responses: the response set to aggregate, already date-filtered.

    Returns:
        dict: ``{totalResponses, perQuestion, timeline, hourly, topAnswers}``
    """
    answer_maps = [load_stored_answers(r.answers) for r in responses]
    per_question = []
    for q in sorted(questions, key=lambda q: q.order_index):
        qid = str(q.id)
        entry = {
            "questionId": q.id,
            "questionText": q.text,
            "type": q.type,
            "data": distribution(qid, answer_maps),
            "totalResponses": len(responses),
        }
        if q.type == "rating":
            entry["averageRating"] = rating_average(qid, answer_maps)
        per_question.append(entry)

    return {
        "totalResponses": len(responses),
        "perQuestion": per_question,
        "timeline": timeline(responses),
        "hourly": hourly(responses),
        "topAnswers": top_answers(per_question),
    }
