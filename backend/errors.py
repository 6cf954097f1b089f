"""Error taxonomy for the response collection engine.

Every error carries a stable ``kind`` (rendered to callers verbatim) and the
HTTP status code the API layer maps it to.
"""
from typing import Optional


class SurveyEngineError(Exception):
    kind = "SurveyEngineError"
    status_code = 400
    retryable = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail()
        super().__init__(self.detail)

    def default_detail(self) -> str:
        return self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class MalformedAnswerPayload(SurveyEngineError):
    kind = "MalformedAnswerPayload"
    status_code = 422


class SurveyNotFound(SurveyEngineError):
    kind = "SurveyNotFound"
    status_code = 404

    def default_detail(self) -> str:
        return "Survey not found"


class SurveyInactive(SurveyEngineError):
    kind = "SurveyInactive"
    status_code = 400

    def default_detail(self) -> str:
        return "Survey is no longer available"


class SurveyExpired(SurveyEngineError):
    kind = "SurveyExpired"
    status_code = 410

    def default_detail(self) -> str:
        return "This survey has expired"


class SurveyFull(SurveyEngineError):
    kind = "SurveyFull"
    status_code = 410

    def default_detail(self) -> str:
        return "Survey has reached maximum respondents"


class DuplicateResponse(SurveyEngineError):
    kind = "DuplicateResponse"
    status_code = 400

    def default_detail(self) -> str:
        return "You have already completed this survey"


class MissingRequiredAnswer(SurveyEngineError):
    kind = "MissingRequiredAnswer"
    status_code = 400

    def __init__(self, question_id: int, detail: Optional[str] = None):
        self.question_id = question_id
        super().__init__(detail or f"Question {question_id} requires an answer")

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["questionId"] = self.question_id
        return out


class TransientConflict(SurveyEngineError):
    kind = "TransientConflict"
    status_code = 503
    retryable = True

    def default_detail(self) -> str:
        return "Too many concurrent submissions, please retry"


class PersistenceFailure(SurveyEngineError):
    kind = "PersistenceFailure"
    status_code = 500

    def default_detail(self) -> str:
        return "Storage is unavailable"


class RespondentNotFound(SurveyEngineError):
    kind = "RespondentNotFound"
    status_code = 404

    def default_detail(self) -> str:
        return "Respondent not found"


class RegistrationError(SurveyEngineError):
    kind = "RegistrationError"
    status_code = 400
