import io, csv
import pytest
from datetime import datetime, timezone

import docx
import exporter
from models import Question, Respondent, Response, Survey
from exporter import build_table, to_csv, to_docx, to_pdf, export_responses, export_filename

AT = datetime(2026, 4, 2, 8, 5, 9, tzinfo=timezone.utc)

def _fixture():
    survey = Survey(title="Team Pulse: Q2", reward=0.0)
    questions = [
        Question(id=2, text="Which tools?\nPick all", type="multiple-choice", order_index=1),
        Question(id=1, text="Comment", type="text", order_index=0),
    ]
    ann = Respondent(ref="USER1", full_name="Ann", email="ann@example.com")
    bo = Respondent(ref="USER2", full_name="Bo", email="bo@example.com")
    responses = [
        Response(answers='{"1": "He said \\"hi\\", twice", "2": ["Jira", "Slack"]}', submitted_at=AT, respondent=ann),
        Response(answers='{"2": ["Slack"]}', submitted_at=AT, respondent=bo),
    ]
    return survey, questions, responses

def test_build_table_layout():
    _, questions, responses = _fixture()
    headers, rows = build_table(questions, responses)
    assert headers == ["Respondent Name", "Respondent Email", "Submitted At", "Comment", "Which tools? Pick all"]
    assert rows[0] == ["Ann", "ann@example.com", "2026-04-02 08:05:09 UTC", 'He said "hi", twice', "Jira; Slack"]
    # unanswered questions are empty cells
    assert rows[1][3] == ""

def test_csv_quotes_every_field():
    _, questions, responses = _fixture()
    headers, rows = build_table(questions, responses)
    text = to_csv(headers, rows).decode("utf-8")
    first_line, second_line = text.split("\r\n")[:2]
    assert first_line == '"Respondent Name","Respondent Email","Submitted At","Comment","Which tools? Pick all"'
    assert '"He said ""hi"", twice"' in second_line
    assert '"Jira; Slack"' in second_line

    parsed = list(csv.reader(io.StringIO(text)))
    assert parsed[0] == headers
    assert parsed[1:] == rows

def test_docx_table_matches_csv_rows():
    _, questions, responses = _fixture()
    headers, rows = build_table(questions, responses)
    doc = docx.Document(io.BytesIO(to_docx("Team Pulse", headers, rows)))
    table = doc.tables[0]
    cells = [[c.text for c in row.cells] for row in table.rows]
    assert cells[0] == headers
    assert cells[1:] == list(csv.reader(io.StringIO(to_csv(headers, rows).decode("utf-8"))))[1:]

def test_pdf_renders_shared_table(monkeypatch):
    survey, questions, responses = _fixture()
    seen = {}
    real_to_pdf = exporter.to_pdf

    def spy(title, headers, rows):
        seen["rows"] = rows
        return real_to_pdf(title, headers, rows)

    monkeypatch.setattr(exporter, "to_pdf", spy)
    f = export_responses(survey, questions, responses, "table-document")
    assert f.content.startswith(b"%PDF")
    assert f.media_type == "application/pdf"
    assert seen["rows"] == build_table(questions, responses)[1]

def test_pdf_with_no_responses():
    assert to_pdf("Empty", ["Respondent Name"], []).startswith(b"%PDF")

def test_filenames():
    assert export_filename("Team Pulse: Q2", "csv") == "Team_Pulse__Q2_responses.csv"
    survey, questions, responses = _fixture()
    assert export_responses(survey, questions, responses, "word-table").filename == "Team_Pulse__Q2_responses.docx"

def test_unknown_format():
    survey, questions, responses = _fixture()
    with pytest.raises(ValueError, match="xlsx"):
        export_responses(survey, questions, responses, "xlsx")

def test_export_endpoint(client, register, paid_survey):
    s = paid_survey(questions=[{"text": "Favourite fruit", "type": "single-choice", "options": ["Mango", "Apple"]}])
    ref = register(name="Kofi")["respondentRef"]
    qid = s["questions"][0]["id"]
    r = client.post("/responses", json={"surveyId": s["id"], "answers": {str(qid): "Mango"}},
                    headers={"X-Respondent-Ref": ref})
    assert r.status_code == 200, r.text

    r = client.get(f"/admin/surveys/{s['id']}/export")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "Paid_Survey_responses.csv" in r.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(r.content.decode("utf-8"))))
    assert rows[0][-1] == "Favourite fruit"
    assert rows[1][0] == "Kofi" and rows[1][-1] == "Mango"

    r = client.get(f"/admin/surveys/{s['id']}/export", params={"format": "word-table"})
    assert r.headers["content-type"] == "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    r = client.get(f"/admin/surveys/{s['id']}/export", params={"format": "table-document"})
    assert r.content.startswith(b"%PDF")
    assert client.get(f"/admin/surveys/{s['id']}/export", params={"format": "xlsx"}).status_code == 422
