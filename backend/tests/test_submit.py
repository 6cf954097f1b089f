from conftest import in_days, unique_email

def _qids(survey):
    return [q["id"] for q in survey["questions"]]

def _answers(survey):
    yes_no, colours, _ = _qids(survey)
    return [
        {"questionId": yes_no, "answer": "Yes"},
        {"questionId": colours, "answer": ["Red", "Blue"]},
    ]

def _summary(client, ref):
    r = client.get(f"/respondents/{ref}", headers={"X-Respondent-Ref": ref})
    assert r.status_code == 200, r.text
    return r.json()

def _counter(client, sid):
    return client.get(f"/admin/surveys/{sid}").json()["currentRespondents"]

def _submit(client, sid, ref, answers):
    return client.post("/responses", json={"surveyId": sid, "answers": answers},
                       headers={"X-Respondent-Ref": ref})

def test_submit_credits_reward_and_counts(client, register, paid_survey):
    s = paid_survey(reward=2.5)
    ref = register()["respondentRef"]

    r = _submit(client, s["id"], ref, _answers(s))
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["rewardCredited"] == 2.5
    assert body["newBalance"] == 2.5
    assert isinstance(body["responseId"], int)

    assert _counter(client, s["id"]) == 1
    me = _summary(client, ref)
    assert me["balance"] == 2.5
    assert me["totalEarned"] == 2.5

    stored = client.get(f"/admin/surveys/{s['id']}/responses").json()["responses"]
    assert len(stored) == 1
    yes_no, colours, _ = _qids(s)
    assert stored[0]["answers"] == {str(yes_no): "Yes", str(colours): ["Red", "Blue"]}
    assert stored[0]["respondent"]["ref"] == ref

def test_map_payload_and_matching_body_ref(client, register, paid_survey):
    s = paid_survey()
    ref = register()["respondentRef"]
    yes_no, colours, notes = _qids(s)
    r = client.post("/responses", json={
        "surveyId": s["id"],
        "respondentRef": ref,
        "answers": {str(yes_no): "No", str(colours): ["Green"], str(notes): None},
    }, headers={"X-Respondent-Ref": ref})
    assert r.status_code == 200, r.text

def test_body_ref_without_signed_in_identity_is_rejected(client, register, paid_survey):
    s = paid_survey(reward=3.0)
    victim = register()["respondentRef"]
    r = client.post("/responses", json={"surveyId": s["id"], "respondentRef": victim, "answers": _answers(s)})
    assert r.status_code == 401
    assert _counter(client, s["id"]) == 0
    assert _summary(client, victim)["balance"] == 0

def test_body_ref_cannot_name_someone_else(client, register, paid_survey):
    s = paid_survey(reward=3.0)
    me, other = register()["respondentRef"], register()["respondentRef"]
    r = client.post("/responses", json={"surveyId": s["id"], "respondentRef": other, "answers": _answers(s)},
                    headers={"X-Respondent-Ref": me})
    assert r.status_code == 403
    assert _counter(client, s["id"]) == 0
    assert _summary(client, other)["balance"] == 0
    assert client.get(f"/admin/surveys/{s['id']}/responses").json()["responses"] == []

def test_duplicate_leaves_state_unchanged(client, register, paid_survey):
    s = paid_survey(reward=1.0)
    ref = register()["respondentRef"]
    assert _submit(client, s["id"], ref, _answers(s)).status_code == 200

    r = _submit(client, s["id"], ref, _answers(s))
    assert r.status_code == 400
    assert r.json()["kind"] == "DuplicateResponse"
    assert _counter(client, s["id"]) == 1
    assert _summary(client, ref)["balance"] == 1.0

def test_full_survey_rejects(client, register, paid_survey):
    s = paid_survey(max_respondents=1)
    first, second = register()["respondentRef"], register()["respondentRef"]
    assert _submit(client, s["id"], first, _answers(s)).status_code == 200

    r = _submit(client, s["id"], second, _answers(s))
    assert r.status_code == 410
    assert r.json()["kind"] == "SurveyFull"
    assert _counter(client, s["id"]) == 1
    assert _summary(client, second)["balance"] == 0

def test_inactive_survey_rejects(client, register, paid_survey):
    s = paid_survey()
    ref = register()["respondentRef"]
    p = client.patch(f"/admin/surveys/{s['id']}", json={"status": "paused"})
    assert p.status_code == 200 and p.json()["status"] == "paused"

    r = _submit(client, s["id"], ref, _answers(s))
    assert r.status_code == 400
    assert r.json()["kind"] == "SurveyInactive"
    assert _counter(client, s["id"]) == 0

def test_expired_survey_rejects(client, register, paid_survey):
    s = paid_survey(expires_in_days=-1)
    ref = register()["respondentRef"]
    r = _submit(client, s["id"], ref, _answers(s))
    assert r.status_code == 410
    assert r.json()["kind"] == "SurveyExpired"
    assert _summary(client, ref)["balance"] == 0

def test_unknown_survey(client, register):
    ref = register()["respondentRef"]
    r = _submit(client, 987654, ref, {"1": "x"})
    assert r.status_code == 404
    assert r.json()["kind"] == "SurveyNotFound"

def test_missing_required_answer(client, register, paid_survey):
    s = paid_survey(reward=3.0)
    ref = register()["respondentRef"]
    yes_no, colours, _ = _qids(s)
    r = _submit(client, s["id"], ref, [{"questionId": yes_no, "answer": "Yes"},
                                       {"questionId": colours, "answer": []}])
    assert r.status_code == 400
    assert r.json() == {"kind": "MissingRequiredAnswer", "detail": r.json()["detail"], "questionId": colours}
    assert _counter(client, s["id"]) == 0
    assert _summary(client, ref)["balance"] == 0

    # the rejected attempt does not count as a response
    assert _submit(client, s["id"], ref, _answers(s)).status_code == 200

def test_malformed_payload(client, register, paid_survey):
    s = paid_survey()
    ref = register()["respondentRef"]
    for bad in (42, "nope", [{"answer": "no id"}], {"1": {"nested": True}}):
        r = _submit(client, s["id"], ref, bad)
        assert r.status_code == 422
        assert r.json()["kind"] == "MalformedAnswerPayload"
    assert _counter(client, s["id"]) == 0

def test_submit_requires_identity(client, paid_survey):
    s = paid_survey()
    r = client.post("/responses", json={"surveyId": s["id"], "answers": _answers(s)})
    assert r.status_code == 401

def test_unknown_respondent(client, paid_survey):
    s = paid_survey()
    r = _submit(client, s["id"], "USERDOESNOTEXIST", _answers(s))
    assert r.status_code == 404
    assert r.json()["kind"] == "RespondentNotFound"
    assert _counter(client, s["id"]) == 0

def test_available_surveys_hide_answered_and_closed(client, register, paid_survey):
    ref = register()["respondentRef"]
    hdr = {"X-Respondent-Ref": ref}
    open_s = paid_survey()
    done_s = paid_survey()
    expired_s = paid_survey(expires_in_days=-1)
    assert _submit(client, done_s["id"], ref, _answers(done_s)).status_code == 200

    ids = {s["id"] for s in client.get("/surveys", headers=hdr).json()}
    assert open_s["id"] in ids
    assert done_s["id"] not in ids
    assert expired_s["id"] not in ids
    assert client.get("/surveys").status_code == 401

# ------------------------
# share links
# ------------------------
def _share_survey(client, owner_ref, **overrides):
    body = {
        "title": "Team lunch",
        "questions": [
            {"text": "Where?", "type": "single-choice", "options": ["Pizza", "Sushi"]},
            {"text": "Rate last time", "type": "rating", "required": False},
        ],
    }
    body.update(overrides)
    r = client.post("/my-surveys", json=body, headers={"X-Respondent-Ref": owner_ref})
    assert r.status_code == 201, r.text
    return r.json()

def test_share_link_anonymous_submissions(client, register):
    owner = register()["respondentRef"]
    s = _share_survey(client, owner)
    code = s["shareCode"]
    where, rate = _qids(s)

    pub = client.get(f"/s/{code}")
    assert pub.status_code == 200
    assert [q["text"] for q in pub.json()["questions"]] == ["Where?", "Rate last time"]
    assert pub.json()["questions"][1]["options"] == ["1", "2", "3", "4", "5"]

    for choice in ("Pizza", "Sushi"):
        r = client.post(f"/s/{code}/responses", json={"answers": {str(where): choice, str(rate): 4}})
        assert r.status_code == 200, r.text

    detail = client.get(f"/my-surveys/{s['id']}", headers={"X-Respondent-Ref": owner}).json()
    assert detail["currentRespondents"] == 2
    assert len(detail["responses"]) == 2
    assert all(r["respondent"]["ref"].startswith("anon_") for r in detail["responses"])
    assert all(r["rewardGranted"] is False for r in detail["responses"])

def test_share_link_known_email_is_one_identity(client, register):
    owner = register()["respondentRef"]
    email = unique_email("sharer")
    sharer = register(email=email)["respondentRef"]
    s = _share_survey(client, owner)
    where, _ = _qids(s)
    body = {"answers": {str(where): "Pizza"}, "respondentName": "Sam", "respondentEmail": email.upper()}

    assert client.post(f"/s/{s['shareCode']}/responses", json=body).status_code == 200
    r = client.post(f"/s/{s['shareCode']}/responses", json=body)
    assert r.status_code == 400
    assert r.json()["kind"] == "DuplicateResponse"

    me = _summary(client, sharer)
    assert me["balance"] == 0
    assert me["totalEarned"] == 0

def test_share_link_missing_required(client, register):
    s = _share_survey(client, register()["respondentRef"])
    _, rate = _qids(s)
    r = client.post(f"/s/{s['shareCode']}/responses", json={"answers": {str(rate): "3"}})
    assert r.status_code == 400
    assert r.json()["kind"] == "MissingRequiredAnswer"

def test_share_link_closed_states(client, register):
    owner = register()["respondentRef"]
    hdr = {"X-Respondent-Ref": owner}
    assert client.get("/s/doesnotexist").json()["kind"] == "SurveyNotFound"

    expired = _share_survey(client, owner, expiresAt=in_days(-1))
    r = client.get(f"/s/{expired['shareCode']}")
    assert r.status_code == 410 and r.json()["kind"] == "SurveyExpired"

    full = _share_survey(client, owner, maxRespondents=1)
    where, _ = _qids(full)
    assert client.post(f"/s/{full['shareCode']}/responses",
                       json={"answers": {str(where): "Sushi"}}).status_code == 200
    r = client.post(f"/s/{full['shareCode']}/responses", json={"answers": {str(where): "Pizza"}})
    assert r.status_code == 410 and r.json()["kind"] == "SurveyFull"

    paused = _share_survey(client, owner)
    client.patch(f"/my-surveys/{paused['id']}", json={"status": "paused"}, headers=hdr)
    r = client.get(f"/s/{paused['shareCode']}")
    assert r.status_code == 400 and r.json()["kind"] == "SurveyInactive"
