"""Answer payload normalization.

Answers reach the engine in two wire shapes:

- a list of ``{"questionId": ..., "answer": ...}`` records, or
- a map keyed by question id.

Both are folded into one canonical map ``{question_id: str | list[str]}`` with
string keys. A ``str`` value is a single answer, a ``list`` a multi-select
answer. Nothing downstream looks at the raw payload shape again.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Union

from errors import MalformedAnswerPayload

logger = logging.getLogger(__name__)

AnswerValue = Union[str, list[str]]
CanonicalAnswers = dict[str, AnswerValue]


def _scalar(value: Any, qid: str) -> str:
    # bool is an int subclass; a JSON true/false is not an answer
    if isinstance(value, bool):
        raise MalformedAnswerPayload(f"Answer for question {qid} must be text, got a boolean")
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    raise MalformedAnswerPayload(f"Answer for question {qid} has unsupported type {type(value).__name__}")


def _coerce_value(value: Any, qid: str) -> AnswerValue:
    if isinstance(value, (list, tuple)):
        return [_scalar(v, qid) for v in value]
    return _scalar(value, qid)


def _key(raw: Any) -> str:
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise MalformedAnswerPayload(f"Invalid question id: {raw!r}")
    key = str(raw).strip()
    if not key:
        raise MalformedAnswerPayload("Empty question id")
    return key


def _entries(payload: Any, strict: bool) -> Iterable[tuple[Any, Any]]:
    """Yield raw (question id, answer) pairs in payload order."""
    if isinstance(payload, list):
        for idx, item in enumerate(payload):
            if not isinstance(item, dict) or "questionId" not in item:
                if strict:
                    raise MalformedAnswerPayload(f"Answer record #{idx} must be an object with a questionId")
                continue
            yield item["questionId"], item.get("answer")
    elif isinstance(payload, dict):
        yield from payload.items()
    else:
        raise MalformedAnswerPayload(f"Unsupported answer payload of type {type(payload).__name__}")


def _fold(payload: Any, strict: bool) -> CanonicalAnswers:
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            raise MalformedAnswerPayload("Answers are not valid JSON")

    out: CanonicalAnswers = {}
    for raw_key, value in _entries(payload, strict):
        try:
            qid = _key(raw_key)
            # last write wins; re-insert so order follows the latest record
            out.pop(qid, None)
            if value is None:
                continue
            out[qid] = _coerce_value(value, qid)
        except MalformedAnswerPayload as e:
            if strict:
                raise
            logger.debug(f"Dropping stored answer: {e.detail}")
    return out


def normalize_answers(payload: Any) -> CanonicalAnswers:
    """Fold an answer payload into the canonical map.

    Args:
        payload: list of ``{questionId, answer}`` records, a map keyed by
            question id, or a JSON string holding either.

    Returns:
        dict: ``{question_id: str | list[str]}``. ``None`` answers are
        treated as unanswered and dropped.

    Raises:
        MalformedAnswerPayload: on any other shape; nothing is partially
            normalized.
    """
    return _fold(payload, strict=True)


def load_stored_answers(raw: Any) -> CanonicalAnswers:
    """Read back a persisted answer map without re-validating it.

    Historical rows were accepted at submission time, so unparsable entries
    are skipped and an unparsable row yields an empty map.
    """
    try:
        return _fold(raw, strict=False)
    except MalformedAnswerPayload as e:
        logger.warning(f"Skipping unparsable stored answers: {e.detail}")
        return {}


def dump_answers(answers: CanonicalAnswers) -> str:
    return json.dumps(answers, ensure_ascii=False, separators=(",", ":"))


def answer_values(value: AnswerValue | None) -> list[str]:
    """Flatten a canonical value into the individual answers it holds."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def is_blank(value: AnswerValue | None) -> bool:
    return not any(v.strip() for v in answer_values(value))
