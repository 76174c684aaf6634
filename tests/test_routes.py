import uuid

import httpx
import pytest

from conftest import FakeGateway, generation_response, grading_response, vec
from rag_grader import main
from rag_grader.core.evaluation import EvaluationService, get_evaluation_service
from rag_grader.core.exceptions import GenerationError, ProviderError
from rag_grader.core.generation import TopicService, get_topic_service
from rag_grader.core.logging import request_id_var
from rag_grader.core.sessions import SessionService, get_session_service
from rag_grader.core.vector_search import VectorRetriever, get_retriever
from rag_grader.main import app
from rag_grader.models import ClassMember, SchoolClass
from rag_grader.routes.dependencies import get_db

STUDENT = {"X-User-Id": "student-1"}
TEACHER = {"X-User-Id": "teacher-1"}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def client(session_factory, gateway):
    async def db_override():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = db_override
    app.dependency_overrides[get_topic_service] = lambda: TopicService(llm=gateway, session_factory=session_factory)
    app.dependency_overrides[get_session_service] = lambda: SessionService(session_factory=session_factory)
    app.dependency_overrides[get_evaluation_service] = lambda: EvaluationService(
        llm=gateway, session_factory=session_factory)
    app.dependency_overrides[get_retriever] = lambda: VectorRetriever(llm=gateway, session_factory=session_factory)

    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert "X-Request-ID" in resp.headers


async def test_missing_identity_is_forbidden(client):
    resp = await client.get("/rag/student/topics")

    assert resp.status_code == 403
    body = resp.json()
    assert body["error"] == "Missing caller identity"
    assert set(body) == {"error", "details", "request_id"}


async def test_create_topic_then_student_flow(client, gateway, session_factory):
    gateway.completions = [generation_response(2)]
    resp = await client.post("/rag/teacher/topics", headers=TEACHER, json={
        "title": "Plants",
        "questions": ["What is photosynthesis?", "Why are leaves green?"],
        "lang": "English",
    })
    assert resp.status_code == 200
    topic = resp.json()
    assert topic["teacher_id"] == "teacher-1"
    assert len(topic["questions"][0]["generated"]) == 4

    resp = await client.post("/rag/student/sessions", headers=STUDENT, json={"topicId": topic["id"]})
    assert resp.status_code == 200
    session_id = resp.json()["session_id"]

    answers = [{"questionId": q["id"], "answer": f"answer {q['position']}"} for q in topic["questions"]]
    resp = await client.post(f"/rag/student/sessions/{session_id}/submit", headers=STUDENT,
                             json={"answers": answers})
    assert resp.status_code == 200

    resp = await client.get(f"/rag/student/sessions/{session_id}/report", headers=STUDENT)
    assert resp.status_code == 404

    gateway.responder = lambda prompt: grading_response("medium", 2)
    resp = await client.post(f"/rag/student/sessions/{session_id}/evaluate", headers=STUDENT)
    assert resp.status_code == 200
    evaluation_id = resp.json()["evaluation_id"]

    resp = await client.get(f"/rag/student/sessions/{session_id}/report", headers=STUDENT)
    assert resp.json()["overall_score"] == 77.0

    resp = await client.get(f"/rag/evaluations/{evaluation_id}", headers=STUDENT)
    assert resp.status_code == 200
    assert resp.json()["session_id"] == session_id

    resp = await client.get(f"/rag/student/sessions/{session_id}", headers={"X-User-Id": "student-2"})
    assert resp.status_code == 403


async def test_teacher_needs_class_relationship(client, gateway, session_factory, make_topic):
    topic = await make_topic()
    session_id = await SessionService(session_factory=session_factory).create_session(topic.id, "student-1")

    resp = await client.get(f"/rag/teacher/sessions/{session_id}", headers=TEACHER)
    assert resp.status_code == 403

    class_id = uuid.uuid4()
    async with session_factory() as session:
        session.add(SchoolClass(id=class_id, name="7B", owner_teacher_id="teacher-1"))
        session.add(ClassMember(class_id=class_id, user_id="student-1"))
        await session.commit()

    resp = await client.get(f"/rag/teacher/sessions/{session_id}", headers=TEACHER)
    assert resp.status_code == 200
    assert resp.json()["student_id"] == "student-1"

    resp = await client.get(f"/rag/teacher/classes/{class_id}/sessions", headers=TEACHER)
    assert resp.status_code == 200
    assert resp.json()["total"] == 1

    resp = await client.get(f"/rag/teacher/classes/{class_id}/sessions", headers={"X-User-Id": "teacher-2"})
    assert resp.status_code == 403


async def test_unknown_session_is_not_found(client):
    resp = await client.get(f"/rag/student/sessions/{uuid.uuid4()}", headers=STUDENT)
    assert resp.status_code == 404


@pytest.mark.parametrize("error, status", [
    (GenerationError("bad batch"), 502),
    (ProviderError("provider down", status_code=503), 503),
    (ProviderError("garbled", malformed=True), 503),
])
async def test_service_errors_map_to_status(client, gateway, error, status):
    gateway.completions = [error]

    resp = await client.post("/rag/teacher/topics", headers=TEACHER,
                             json={"title": "Plants", "questions": ["Q?"]})

    assert resp.status_code == status
    assert resp.json()["error"] == error.message


async def test_validation_error_maps_to_400(client, gateway):
    resp = await client.post("/rag/teacher/topics", headers=TEACHER, json={"title": " ", "questions": ["Q?"]})

    assert resp.status_code == 400
    assert gateway.prompts == []


async def test_search_route(client, gateway):
    gateway.embeddings = {"doc": vec(1.0), "q": vec(1.0)}
    resp = await client.post("/rag/docs", headers=TEACHER, json={"content": "doc", "source": "notes"})
    assert resp.status_code == 200

    resp = await client.get("/rag/search", headers=STUDENT, params={"q": "q", "k": 0})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_results"] == 1
    assert body["results"][0]["content"] == "doc"


async def test_unexpected_error_maps_to_500(client, gateway):
    gateway.completions = [RuntimeError("kaboom")]

    resp = await client.post("/rag/teacher/topics", headers=TEACHER, json={"title": "Plants", "questions": ["Q?"]})

    assert resp.status_code == 500
    assert resp.json()["error"] == "Internal server error"


async def test_request_logs_carry_request_id(client, monkeypatch):
    seen = []

    class RecordingLogger:
        def _record(self, event, **kwargs):
            seen.append((event, request_id_var.get()))

        info = warning = error = debug = _record

    monkeypatch.setattr(main, "logger", RecordingLogger())

    resp = await client.get("/health", headers={"X-Request-ID": "req-42"})

    assert resp.headers["X-Request-ID"] == "req-42"
    assert ("request_received", "req-42") in seen
    assert ("request_completed", "req-42") in seen
