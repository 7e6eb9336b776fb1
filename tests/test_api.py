import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture
def client(mongo_db):
    main.configure(mongo_db)
    with TestClient(main.app) as client:
        yield client
    main.sessions.close()


def _register(client, name, email, password="secret1"):
    response = client.post("/auth/register", json={"name": name, "email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def _headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def director_headers(client):
    body = _register(client, "김원장", "director@hyeyum.kr")
    assert body["role"] == "director"
    return _headers(body["access_token"])


def test_root(client):
    assert client.get("/").json() == {"message": "Academy Manager API is running"}


def test_register_roles_and_login(client, director_headers):
    body = _register(client, "박강사", "park@hyeyum.kr")
    assert body["role"] == "teacher"

    response = client.post("/auth/token", data={"username": "park@hyeyum.kr", "password": "secret1"})
    assert response.status_code == 200
    me = client.get("/me", headers=_headers(response.json()["access_token"])).json()
    assert me["user"]["loginId"] == "park@hyeyum.kr"
    assert me["user"]["role"] == "teacher"


def test_register_errors(client, director_headers):
    response = client.post("/auth/register", json={"name": "x", "email": "director@hyeyum.kr", "password": "secret1"})
    assert response.status_code == 400
    assert response.json()["code"] == "auth/email-already-in-use"

    response = client.post("/auth/register", json={"name": "x", "email": "new@hyeyum.kr", "password": "123"})
    assert response.json()["detail"] == "비밀번호는 6자 이상이어야 합니다."


def test_bad_login(client, director_headers):
    response = client.post("/auth/token", data={"username": "director@hyeyum.kr", "password": "nope-nope"})
    assert response.status_code == 401


def test_logout_revokes_token(client, director_headers):
    assert client.post("/auth/logout", headers=director_headers).status_code == 200
    assert client.get("/classes", headers=director_headers).status_code == 401


def test_class_attendance_and_records_flow(client, director_headers):
    class_id = client.post("/classes", json={"name": "중1_기본반", "time": "5:00"}, headers=director_headers).json()["id"]
    student_id = client.post(
        f"/classes/{class_id}/students", json={"name": "정하늘", "lastAttended": "2025-09-01"}, headers=director_headers,
    ).json()["id"]

    response = client.post(f"/classes/{class_id}/students/{student_id}/attendance", headers=director_headers)
    assert response.json() == {"attendance": "출석"}

    record = {"date": "2025-09-01", "progressTextbook": "쎈수학", "progressRange": "12-15"}
    assert client.post(f"/classes/{class_id}/records", json=record, headers=director_headers).status_code == 200
    duplicate = client.post(f"/classes/{class_id}/records", json=record, headers=director_headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "이 날짜에 대한 기록이 이미 존재합니다."

    records = client.get(f"/classes/{class_id}/records", params={"month": "2025-09"}, headers=director_headers).json()
    assert [r["progressRange"] for r in records] == ["12-15"]

    history = client.get("/attendance/history", params={"day": "2025-09-01"}, headers=director_headers).json()
    mine = [s for s in history["2025-09-01"] if s["classId"] == class_id]
    assert mine == [{"classId": class_id, "className": "중1_기본반", "time": "5:00", "present": 1, "absent": 0, "late": 0}]

    detail = client.get(f"/classes/{class_id}", headers=director_headers).json()
    assert detail["class"]["progressTextbooks"] == ["쎈수학"]
    assert detail["teacherName"] == "미배정"


def test_teacher_scope(client, director_headers):
    teacher = _register(client, "박강사", "park@hyeyum.kr")
    teacher_headers = _headers(teacher["access_token"])

    own = client.post("/classes", json={"name": "박강사반", "time": "3:00", "teacherId": "someone"}, headers=teacher_headers).json()["id"]
    classes = client.get("/classes", headers=teacher_headers).json()
    assert [c["id"] for c in classes] == [own]
    assert classes[0]["teacherId"] == teacher["user_id"]

    demo = next(c for c in client.get("/classes", headers=director_headers).json() if c["name"] == "초6_심화반")
    assert client.delete(f"/classes/{demo['id']}", headers=teacher_headers).status_code == 403
    assert client.get("/users", headers=teacher_headers).json()[0]["id"] == teacher["user_id"]
    assert client.post("/users", json={"loginId": "x@hyeyum.kr", "name": "x", "password": "secret1"}, headers=teacher_headers).status_code == 403


def test_director_user_management(client, director_headers):
    uid = client.post(
        "/users", json={"loginId": "lee@hyeyum.kr", "name": "이강사", "role": "teacher", "password": "secret1"},
        headers=director_headers,
    ).json()["id"]
    class_id = client.post("/classes", json={"name": "A", "time": "1:00", "teacherId": uid}, headers=director_headers).json()["id"]

    response = client.patch(f"/users/{uid}", json={"password": "another1"}, headers=director_headers)
    assert response.status_code == 403

    assert client.delete(f"/users/{uid}", headers=director_headers).status_code == 200
    detail = client.get(f"/classes/{class_id}", headers=director_headers).json()
    assert detail["class"]["teacherId"] == ""
    assert client.post("/auth/token", data={"username": "lee@hyeyum.kr", "password": "secret1"}).status_code == 401


def test_todos(client, director_headers):
    client.post("/todos/2025-09-01", json={"text": "상담 준비"}, headers=director_headers)
    assert client.get("/todos/2025-09-01", headers=director_headers).json() == ["상담 준비"]
    client.delete("/todos/2025-09-01/0", headers=director_headers)
    assert client.get("/todos/2025-09-01", headers=director_headers).json() == []
    assert client.delete("/todos/2025-09-01/0", headers=director_headers).status_code == 404


def test_unknown_class(client, director_headers):
    assert client.get("/classes/nope/records", headers=director_headers).status_code == 404


def test_null_patch_fields_keep_class_readable(client, director_headers):
    class_id = client.post("/classes", json={"name": "중1_기본반", "time": "5:00"}, headers=director_headers).json()["id"]
    record = {"date": "2025-09-01", "progressTextbook": "쎈수학", "progressRange": "12-15", "memo": "첫 수업"}
    client.post(f"/classes/{class_id}/records", json=record, headers=director_headers)
    student_id = client.post(
        f"/classes/{class_id}/students", json={"name": "정하늘", "lastAttended": "2025-09-01"}, headers=director_headers,
    ).json()["id"]

    response = client.patch(
        f"/classes/{class_id}/records/2025-09-01", json={"memo": None, "isCompleted": None}, headers=director_headers,
    )
    assert response.status_code == 200
    response = client.patch(
        f"/classes/{class_id}/students/{student_id}", json={"lastAttended": None}, headers=director_headers,
    )
    assert response.status_code == 200

    login = client.post("/auth/token", data={"username": "director@hyeyum.kr", "password": "secret1"})
    assert login.status_code == 200
    detail = client.get(f"/classes/{class_id}", headers=_headers(login.json()["access_token"])).json()
    assert detail["class"]["records"][0]["memo"] == "첫 수업"
    assert detail["class"]["students"][0]["lastAttended"] == "2025-09-01"


def test_delete_missing_student_and_record(client, director_headers):
    class_id = client.post("/classes", json={"name": "A", "time": "1:00"}, headers=director_headers).json()["id"]
    assert client.delete(f"/classes/{class_id}/students/s0", headers=director_headers).status_code == 404
    assert client.delete(f"/classes/{class_id}/records/2025-01-01", headers=director_headers).status_code == 404


def test_database_check(client, director_headers):
    body = client.get("/test").json()
    assert body["backend"] == "running"
    assert body["database"] == "academy_test"
    assert "users" in body["collections"]
    assert body["sessions"] == 1
