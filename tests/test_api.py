import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, run, seed_world
from exampro.services.memory_backend import InMemoryBackend


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api():
    backend = InMemoryBackend()
    world = run(seed_world(backend))
    with TestClient(create_app(backend)) as client:
        yield client, world


def _student_login(client, world, fingerprint="fp-api"):
    r = client.post("/api/auth/login", json={
        "login_id": world.student_login_id.lower(),
        "password": world.student_login_id,
        "device_fingerprint": fingerprint,
    })
    assert r.status_code == 200, r.text
    return r.json()["token"]


def _admin_login(client):
    r = client.post("/api/auth/admin-login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert r.status_code == 200, r.text
    return r.json()["token"]


def test_full_exam_flow(api):
    client, world = api
    token = _student_login(client, world)
    headers = _auth(token)

    exams = client.get("/api/exams", headers=headers).json()["exams"]
    assert [e["exam"]["title"] for e in exams] == ["Reading Basics"]
    assert exams[0]["completed"] is False

    r = client.post(f"/api/exams/{world.exam.id}/start", headers=headers)
    assert r.status_code == 200, r.text
    started = r.json()
    assert started["state"] == "active"
    assert started["total"] == 2
    assert started["exam"]["duration_minutes"] == 1

    q0 = client.get("/api/question/0", headers=headers).json()
    assert "correct_answer" not in q0
    assert list(q0["options"]) == ["A", "B", "C", "D"]
    assert client.post("/api/save-answer", json={"answer": "b"}, headers=headers).json()["answered_count"] == 1

    assert client.post("/api/navigate", json={"index": 1}, headers=headers).json()["index"] == 1
    q1 = client.get("/api/question/1", headers=headers).json()
    assert list(q1["options"]) == ["A", "B"]
    bad = client.post("/api/save-answer", json={"answer": "D"}, headers=headers)
    assert bad.status_code == 400
    assert bad.json()["error"] == "InvalidAnswer"
    client.post("/api/save-answer", json={"answer": "B"}, headers=headers)

    state = client.get("/api/exam-state", headers=headers).json()
    assert state["answered_count"] == 2
    assert state["current_quest_index"] == 1

    result = client.post("/api/submit-exam", headers=headers).json()
    assert result["correct_count"] == 2
    assert result["total"] == 2
    assert result["percentage"] == pytest.approx(100.0)
    assert result["passed"] is True

    review = client.get(f"/api/results/{result['attempt_id']}", headers=headers).json()
    assert [i["selected_answer"] for i in review["items"]] == ["B", "B"]
    assert review["passed"] is True

    again = client.post(f"/api/exams/{world.exam.id}/start", headers=headers)
    assert again.status_code == 409
    assert again.json()["error"] == "ExamAlreadyCompleted"

    exams = client.get("/api/exams", headers=headers).json()["exams"]
    assert exams[0]["completed"] is True


def test_requests_without_login_are_rejected(api):
    client, world = api
    assert client.get("/api/exams").status_code == 401
    assert client.get("/api/exam-state").status_code == 409
    assert client.get("/api/admin/accounts").status_code == 401


def test_login_errors(api):
    client, world = api
    r = client.post("/api/auth/login", json={"login_id": "ZZZZZZZZ", "password": "x", "device_fingerprint": "f"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid User ID"

    r = client.post("/api/auth/login", json={
        "login_id": world.student_login_id, "password": "wrong", "device_fingerprint": "f",
    })
    assert r.status_code == 401
    assert r.json()["error"] == "InvalidCredentials"


def test_device_conflict(api):
    client, world = api
    _student_login(client, world, fingerprint="shared")
    r = client.post("/api/auth/login", json={
        "login_id": world.other_login_id,
        "password": world.other_login_id,
        "device_fingerprint": "shared",
    })
    assert r.status_code == 403
    assert r.json()["error"] == "DeviceConflict"


def test_fingerprint_derived_from_headers_when_missing(api):
    client, world = api
    browser = {"User-Agent": "TestBrowser/1.0", "Accept-Language": "en-US"}
    r = client.post("/api/auth/login", headers=browser, json={
        "login_id": world.student_login_id, "password": world.student_login_id,
    })
    assert r.status_code == 200
    r = client.post("/api/auth/login", headers=browser, json={
        "login_id": world.other_login_id, "password": world.other_login_id,
    })
    assert r.status_code == 403


def test_admin_account_management(api):
    client, world = api
    headers = _auth(_admin_login(client))

    r = client.post("/api/admin/accounts", headers=headers, json={
        "full_name": "Omar Khaled Said", "phone": "+2010", "class": "2prp",
    })
    assert r.status_code == 200, r.text
    created = r.json()
    assert created["account"]["class"] == "2prp"
    assert "email" not in created["account"]

    accounts = client.get("/api/admin/accounts", headers=headers).json()["accounts"]
    assert created["login_id"] in {a["login_id"] for a in accounts}

    patched = client.patch(f"/api/admin/accounts/{created['account']['id']}", headers=headers, json={"class": "3sec"})
    assert patched.json()["class"] == "3sec"

    details = client.get(f"/api/admin/accounts/{created['account']['id']}", headers=headers).json()
    assert details["attempts"] == []

    assert client.delete(f"/api/admin/accounts/{created['account']['id']}", headers=headers).status_code == 200
    missing = client.get(f"/api/admin/accounts/{created['account']['id']}", headers=headers)
    assert missing.status_code == 404


def test_student_cannot_use_admin_endpoints(api):
    client, world = api
    headers = _auth(_student_login(client, world))
    r = client.get("/api/admin/accounts", headers=headers)
    assert r.status_code == 403
    assert r.json()["error"] == "AdminRequired"

    r = client.post("/api/auth/admin-login", json={
        "email": world.student.email, "password": world.student_login_id,
    })
    assert r.status_code == 403


def test_bulk_import_upload(api):
    client, world = api
    headers = _auth(_admin_login(client))

    template = client.get("/api/admin/import/template", headers=headers)
    assert template.headers["content-type"].startswith("text/csv")
    assert template.text.startswith("full_name,phone,class")

    csv_text = "full_name,phone\nMohamed Ahmed Hassan,+201234567890\nAhmed Hassan,\n"
    r = client.post(
        "/api/admin/import",
        headers=headers,
        files={"file": ("students.csv", csv_text.encode("utf-8"), "text/csv")},
        data={"default_class": "3prp"},
    )
    assert r.status_code == 200, r.text
    report = r.json()
    assert report["total"] == 2
    assert report["success_count"] == 1
    assert report["failure_count"] == 1
    assert report["outcomes"][1]["error"] == "Name must have 3 parts"

    export = client.post("/api/admin/import/export", headers=headers, json={"outcomes": report["outcomes"]})
    assert export.status_code == 200
    assert export.text.splitlines()[0] == "Name,User ID,Status,Error"
    assert "import_results_" in export.headers["content-disposition"]


def test_bulk_import_rejects_bad_uploads(api):
    client, world = api
    headers = _auth(_admin_login(client))

    r = client.post(
        "/api/admin/import", headers=headers,
        files={"file": ("students.txt", b"full_name\nA B C\n", "text/plain")},
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Please upload a CSV file"

    r = client.post(
        "/api/admin/import", headers=headers,
        files={"file": ("students.csv", b"full_name,phone,class\n", "text/csv")},
    )
    assert r.status_code == 400


def test_retake_and_results_export(api):
    client, world = api
    student = _auth(_student_login(client, world))
    client.post(f"/api/exams/{world.exam.id}/start", headers=student)
    attempt_id = client.post("/api/submit-exam", headers=student).json()["attempt_id"]

    admin = _auth(_admin_login(client))
    export = client.get(f"/api/admin/results/export?exam_id={world.exam.id}", headers=admin)
    lines = export.text.splitlines()
    assert lines[0].startswith("Student Name,Student ID,Grade,Exam")
    assert len(lines) == 2
    assert '"Failed"' in lines[1]

    assert client.delete(f"/api/admin/attempts/{attempt_id}", headers=admin).status_code == 200
    r = client.post(f"/api/exams/{world.exam.id}/start", headers=student)
    assert r.status_code == 200
    assert r.json()["state"] == "active"


def test_authoring_endpoints(api):
    client, world = api
    headers = _auth(_admin_login(client))

    exam = client.post("/api/admin/exams", headers=headers, json={
        "title": "Grammar", "duration_minutes": 20,
    }).json()
    passage = client.post(f"/api/admin/exams/{exam['id']}/passages", headers=headers, json={
        "title": "Letter", "content": "Dear friend...",
    }).json()
    r = client.post(f"/api/admin/exams/{exam['id']}/questions", headers=headers, json={"questions": [
        {"question_text": "Q1", "option_a": "x", "option_b": "y", "correct_answer": "A",
         "passage_id": passage["id"]},
    ]})
    assert r.json()["count"] == 1

    bad = client.post(f"/api/admin/exams/{exam['id']}/questions", headers=headers, json={"questions": [
        {"question_text": "Q2", "option_a": "x", "correct_answer": "A"},
    ]})
    assert bad.status_code == 400
    assert bad.json()["detail"].startswith("Question 1:")

    published = client.patch(f"/api/admin/exams/{exam['id']}", headers=headers, json={"is_published": True})
    assert published.json()["is_published"] is True

    assert client.delete(f"/api/admin/exams/{exam['id']}", headers=headers).status_code == 200


def test_contact_flow(api):
    client, world = api
    r = client.post("/api/contact", json={"name": "Parent", "email": "p@example.com", "message": "Hi"})
    assert r.status_code == 200
    message_id = r.json()["id"]

    headers = _auth(_admin_login(client))
    messages = client.get("/api/admin/contact", headers=headers).json()["messages"]
    assert [m["id"] for m in messages] == [message_id]
    assert client.post(f"/api/admin/contact/{message_id}/read", headers=headers).json()["is_read"] is True


def test_logout_ends_session(api):
    client, world = api
    token = _student_login(client, world)
    client.post(f"/api/exams/{world.exam.id}/start", headers=_auth(token))
    assert client.post("/api/auth/logout", headers=_auth(token)).status_code == 200
    assert client.get("/api/exams", headers=_auth(token)).status_code == 401


def test_image_upload_endpoint(api):
    client, world = api
    headers = _auth(_admin_login(client))
    r = client.post("/api/admin/images", headers=headers, files={"file": ("map.jpg", b"jpegdata", "image/jpeg")})
    assert r.status_code == 200, r.text
    assert r.json()["url"].endswith(".jpg")

    stored = client.get(r.json()["url"].replace("http://localhost", ""))
    assert stored.status_code == 200
    assert stored.content == b"jpegdata"
    assert stored.headers["content-type"] == "image/jpeg"
    assert client.get("/storage/exam-images/missing.jpg").status_code == 404

    r = client.post("/api/admin/images", files={"file": ("map.jpg", b"jpegdata", "image/jpeg")})
    assert r.status_code == 401


def test_exam_list_filters(api):
    client, world = api
    admin = _auth(_admin_login(client))
    for title, grade, subject in [("Math 3", "3prp", "math"), ("Science 1", "1sec", "science")]:
        r = client.post("/api/admin/exams", headers=admin, json={
            "title": title, "duration_minutes": 10, "grade": grade, "subject": subject,
            "is_published": True,
        })
        assert r.json()["grade"] == grade

    headers = _auth(_student_login(client, world))

    def titles(**params):
        r = client.get("/api/exams", headers=headers, params=params)
        assert r.status_code == 200, r.text
        return {e["exam"]["title"] for e in r.json()["exams"]}

    assert titles() == {"Reading Basics", "Math 3"}
    assert titles(grade="all") == {"Reading Basics", "Math 3", "Science 1"}
    assert titles(grade="1sec") == {"Reading Basics", "Science 1"}
    assert titles(grade="all", subject="math") == {"Reading Basics", "Math 3"}


def test_admin_exam_list_and_preview(api):
    client, world = api
    headers = _auth(_admin_login(client))
    draft = client.post("/api/admin/exams", headers=headers, json={
        "title": "Draft", "duration_minutes": 5,
    }).json()

    exams = client.get("/api/admin/exams", headers=headers).json()["exams"]
    assert {e["title"] for e in exams} == {"Reading Basics", "Draft"}
    assert next(e for e in exams if e["id"] == draft["id"])["is_published"] is False

    preview = client.get(f"/api/admin/exams/{world.exam.id}", headers=headers).json()
    assert preview["exam"]["title"] == "Reading Basics"
    assert [q["correct_answer"] for q in preview["questions"]] == ["B", "B"]
    assert preview["passages"] == []

    assert client.get("/api/admin/exams/missing", headers=headers).status_code == 404

    student = _auth(_student_login(client, world))
    assert client.get("/api/admin/exams", headers=student).status_code == 403
    assert client.get(f"/api/admin/exams/{world.exam.id}", headers=student).status_code == 403


def test_question_edit_and_delete_endpoints(api):
    client, world = api
    headers = _auth(_admin_login(client))
    question_id = world.questions[0].id

    r = client.patch(f"/api/admin/questions/{question_id}", headers=headers, json={
        "question_text": "3 + 3 = ?", "correct_answer": "c",
    })
    assert r.status_code == 200, r.text
    assert r.json()["correct_answer"] == "C"

    bad = client.patch(f"/api/admin/questions/{world.questions[1].id}", headers=headers, json={
        "correct_answer": "D",
    })
    assert bad.status_code == 400

    assert client.delete(f"/api/admin/questions/{question_id}", headers=headers).status_code == 200
    preview = client.get(f"/api/admin/exams/{world.exam.id}", headers=headers).json()
    assert [q["id"] for q in preview["questions"]] == [world.questions[1].id]

    missing = client.delete(f"/api/admin/questions/{question_id}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "QuestionNotFound"
