import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from examiner.api import deps
from examiner.api.v1.endpoints import sessions as sessions_endpoint
from examiner.core.database import get_db
from examiner.core.security import create_access_token
from examiner.main import app
from examiner.models.db import Result

from helpers import TWO_SINGLE_CORRECT, add_session, grant_role, open_database, seed_exam, staff, student


def seed(db_path, *args, **kwargs):
    async def run():
        async with open_database(db_path) as sessionmaker:
            async with sessionmaker() as db:
                return await seed_exam(db, *args, **kwargs)

    return asyncio.run(run())


def fetch_result(db_path, session_id):
    async def run():
        async with open_database(db_path) as sessionmaker:
            async with sessionmaker() as db:
                row = await db.execute(select(Result).where(Result.session_id == session_id))
                return row.scalar_one_or_none()

    return asyncio.run(run())


@pytest.fixture
def client(db_path, monkeypatch):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async def override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(sessions_endpoint, "AsyncSessionLocal", factory)
    yield TestClient(app)
    app.dependency_overrides.clear()


def login_as(caller):
    app.dependency_overrides[deps.get_current_user] = lambda: caller


def test_health_check(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_evaluate_returns_result_and_summary(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1", 1: "opt4"})
    login_as(student(seeded["session"].student_id))

    response = client.post("/api/v1/results/evaluate", json={"session_id": str(seeded["session"].id)})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["summary"] == {
        "total_questions": 2,
        "attempted": 2,
        "correct": 1,
        "wrong": 1,
        "skipped": 0,
        "marks_obtained": 1.5,
        "total_marks": 4.0,
        "percentage": 37.5,
        "accuracy": 50.0,
    }
    assert body["result"]["session_id"] == str(seeded["session"].id)
    assert body["result"]["section_wise_scores"]["default"] == {
        "correct": 1,
        "wrong": 1,
        "marks": 1.5,
        "total": 4.0,
    }


def test_evaluate_twice_is_idempotent(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"})
    login_as(staff("super_admin"))
    payload = {"session_id": str(seeded["session"].id)}

    first = client.post("/api/v1/results/evaluate", json=payload).json()
    second = client.post("/api/v1/results/evaluate", json=payload).json()

    assert first["result"]["id"] == second["result"]["id"]
    first["result"].pop("evaluated_at")
    second["result"].pop("evaluated_at")
    assert first == second


@pytest.mark.parametrize("payload", [{}, {"session_id": ""}, {"session_id": "abc"}])
def test_evaluate_rejects_malformed_session_id(client, payload):
    login_as(staff("super_admin"))
    response = client.post("/api/v1/results/evaluate", json=payload)
    assert response.status_code == 400
    assert response.json()["kind"] == "invalid_request"


def test_evaluate_unknown_session(client, db_path):
    seed(db_path, TWO_SINGLE_CORRECT)
    login_as(staff("super_admin"))
    response = client.post("/api/v1/results/evaluate", json={"session_id": str(uuid.uuid4())})
    assert response.status_code == 404
    assert response.json() == {"detail": "Session not found", "kind": "not_found"}


def test_evaluate_forbidden_for_other_students(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"})
    login_as(student(uuid.uuid4()))

    response = client.post("/api/v1/results/evaluate", json={"session_id": str(seeded["session"].id)})

    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"
    assert "result" not in response.json()
    assert fetch_result(db_path, seeded["session"].id) is None


def test_unpublished_result_hidden_from_student(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"})
    session_id = str(seeded["session"].id)
    teacher = staff("teacher", seeded["exam"].institute_id)
    login_as(teacher)
    assert client.post("/api/v1/results/evaluate", json={"session_id": session_id}).status_code == 200

    assert client.get(f"/api/v1/results/{session_id}").status_code == 200
    login_as(student(seeded["session"].student_id))
    response = client.get(f"/api/v1/results/{session_id}")
    assert response.status_code == 403


def test_published_result_visible_to_student(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"}, show_result_immediately=True)
    session_id = str(seeded["session"].id)
    login_as(student(seeded["session"].student_id))

    assert client.get(f"/api/v1/results/{session_id}").status_code == 404
    client.post("/api/v1/results/evaluate", json={"session_id": session_id})
    response = client.get(f"/api/v1/results/{session_id}")

    assert response.status_code == 200
    assert response.json()["is_published"] is True
    assert response.json()["marks_obtained"] == 2.0


def test_submit_session_triggers_evaluation(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1", 1: "opt3"}, status="in_progress", duration=None)
    session_id = seeded["session"].id
    login_as(student(seeded["session"].student_id))

    response = client.post(f"/api/v1/sessions/{session_id}/submit", json={"auto": True})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "auto_submitted"
    assert body["evaluation_scheduled"] is True
    assert body["end_time"] is not None
    result = fetch_result(db_path, session_id)
    assert result is not None
    assert result.marks_obtained == 4
    assert result.time_taken_seconds >= 0


def test_submit_is_idempotent_for_finished_sessions(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"}, status="terminated")
    session_id = seeded["session"].id
    login_as(student(seeded["session"].student_id))

    response = client.post(f"/api/v1/sessions/{session_id}/submit")

    assert response.status_code == 200
    assert response.json()["status"] == "terminated"
    assert response.json()["evaluation_scheduled"] is False
    assert fetch_result(db_path, session_id) is None


def test_only_owner_can_submit(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, status="in_progress", duration=None)
    login_as(staff("teacher", seeded["exam"].institute_id))
    response = client.post(f"/api/v1/sessions/{seeded['session'].id}/submit")
    assert response.status_code == 403


def test_answer_key_upload_re_evaluates_finished_sessions(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1", 1: "opt4"})
    session_id = seeded["session"].id
    teacher = staff("teacher", seeded["exam"].institute_id)
    login_as(teacher)
    client.post("/api/v1/results/evaluate", json={"session_id": str(session_id)})
    assert fetch_result(db_path, session_id).marks_obtained == 1.5

    response = client.post(
        f"/api/v1/exams/{seeded['exam'].id}/answer-keys",
        json={"answers": {str(seeded["questions"][1].id): "opt4"}},
    )

    assert response.status_code == 200
    assert response.json()["version"] == 1
    assert response.json()["reevaluating_sessions"] == 1
    assert fetch_result(db_path, session_id).marks_obtained == 4


def test_answer_key_upload_requires_staff(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT)
    login_as(student(seeded["session"].student_id))
    response = client.post(
        f"/api/v1/exams/{seeded['exam'].id}/answer-keys",
        json={"answers": {str(seeded["questions"][0].id): "opt2"}},
    )
    assert response.status_code == 403


def test_rank_and_stats_endpoints(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1", 1: "opt3"})
    exam, questions = seeded["exam"], seeded["questions"]

    async def second_session():
        async with open_database(db_path) as sessionmaker:
            async with sessionmaker() as db:
                return await add_session(db, exam, questions, {1: "opt3"})

    other = asyncio.run(second_session())
    login_as(staff("institute_admin", exam.institute_id))
    for session_id in (seeded["session"].id, other.id):
        client.post("/api/v1/results/evaluate", json={"session_id": str(session_id)})

    ranked = client.post(f"/api/v1/results/exam/{exam.id}/rank")
    stats = client.get(f"/api/v1/results/exam/{exam.id}/stats")

    assert ranked.status_code == 200
    assert ranked.json()["ranked"] == 2
    assert ranked.json()["standings"][0] == {
        "session_id": str(seeded["session"].id),
        "rank": 1,
        "percentile": 100.0,
    }
    assert fetch_result(db_path, other.id).rank == 2
    assert stats.json()["total_students"] == 2
    assert stats.json()["average_score"] == 3.0


def test_bearer_token_resolves_roles(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"})
    teacher_id = uuid.uuid4()

    async def add_role():
        async with open_database(db_path) as sessionmaker:
            async with sessionmaker() as db:
                await grant_role(db, teacher_id, "teacher", seeded["exam"].institute_id)

    asyncio.run(add_role())
    payload = {"session_id": str(seeded["session"].id)}

    assert client.post("/api/v1/results/evaluate", json=payload).status_code == 401
    bad = client.post(
        "/api/v1/results/evaluate", json=payload, headers={"Authorization": "Bearer not-a-token"}
    )
    assert bad.status_code == 401

    expired = create_access_token({"sub": str(teacher_id)}, expires_delta=timedelta(minutes=-1))
    response = client.post(
        "/api/v1/results/evaluate", json=payload, headers={"Authorization": f"Bearer {expired}"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Token expired"

    token = create_access_token({"sub": str(teacher_id)})
    response = client.post(
        "/api/v1/results/evaluate", json=payload, headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 200
    assert response.json()["summary"]["correct"] == 1

    stranger = create_access_token({"sub": str(uuid.uuid4())})
    response = client.post(
        "/api/v1/results/evaluate", json=payload, headers={"Authorization": f"Bearer {stranger}"}
    )
    assert response.status_code == 403


def test_role_lookup_failure_is_a_dependency_failure(client, db_path):
    seeded = seed(db_path, TWO_SINGLE_CORRECT, {0: "opt1"})
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async def unreachable_db():
        async with factory() as session:
            session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("connection reset")))
            yield session

    app.dependency_overrides[get_db] = unreachable_db
    token = create_access_token({"sub": str(uuid.uuid4())})
    response = client.post(
        "/api/v1/results/evaluate",
        json={"session_id": str(seeded["session"].id)},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 500
    assert response.json() == {"detail": "Failed to load caller roles", "kind": "dependency_failure"}
