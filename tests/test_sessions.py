import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from rag_grader.core.exceptions import NotFoundError, ValidationError
from rag_grader.core.sessions import SessionService
from rag_grader.models import ClassMember, Evaluation, SchoolClass, StudentResponse, StudentSession


@pytest.fixture
def sessions(session_factory):
    return SessionService(session_factory=session_factory)


async def response_rows(session_factory, session_id):
    async with session_factory() as session:
        return (await session.scalars(
            select(StudentResponse).where(StudentResponse.session_id == session_id)
        )).all()


async def test_create_session_is_idempotent(sessions, make_topic, session_factory):
    topic = await make_topic()

    first = await sessions.create_session(topic.id, "student-1")
    second = await sessions.create_session(topic.id, "student-1")
    other = await sessions.create_session(topic.id, "student-2")

    assert first == second
    assert other != first
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(StudentSession)) == 2


async def test_concurrent_create_session_returns_one_id(sessions, make_topic):
    topic = await make_topic()

    ids = await asyncio.gather(*(sessions.create_session(topic.id, "student-1") for _ in range(5)))

    assert len(set(ids)) == 1


async def test_create_session_for_missing_topic(sessions):
    with pytest.raises(NotFoundError):
        await sessions.create_session(uuid.uuid4(), "student-1")


async def test_create_session_rejects_blank_student(sessions, make_topic):
    topic = await make_topic()
    with pytest.raises(ValidationError):
        await sessions.create_session(topic.id, "  ")


async def test_submit_replaces_previous_answer(sessions, make_topic, session_factory):
    topic = await make_topic(questions=["Q1?", "Q2?"])
    session_id = await sessions.create_session(topic.id, "student-1")
    q1, q2 = topic.questions

    await sessions.submit_answers(session_id, [(q1.id, "first draft")])
    await sessions.submit_answers(session_id, [(q1.id, "final answer"), (q2.id, "second")])

    rows = await response_rows(session_factory, session_id)
    assert sorted((r.question_id, r.answer) for r in rows) == sorted([(q1.id, "final answer"), (q2.id, "second")])


async def test_concurrent_submits_leave_one_row_per_question(sessions, make_topic, session_factory):
    topic = await make_topic(questions=["Q1?"])
    session_id = await sessions.create_session(topic.id, "student-1")
    question_id = topic.questions[0].id

    await asyncio.gather(*(
        sessions.submit_answers(session_id, [(question_id, f"answer {n}")]) for n in range(5)
    ))

    rows = await response_rows(session_factory, session_id)
    assert len(rows) == 1
    assert rows[0].answer.startswith("answer ")


async def test_submit_validation(sessions, make_topic):
    topic = await make_topic(questions=["Q1?"])
    foreign = await make_topic(questions=["Other?"], title="Other")
    session_id = await sessions.create_session(topic.id, "student-1")
    question_id = topic.questions[0].id

    with pytest.raises(ValidationError):
        await sessions.submit_answers(session_id, [])
    with pytest.raises(ValidationError):
        await sessions.submit_answers(session_id, [(question_id, "a"), (question_id, "b")])
    with pytest.raises(ValidationError):
        await sessions.submit_answers(session_id, [(foreign.questions[0].id, "wrong topic")])
    with pytest.raises(ValidationError):
        await sessions.submit_answers(session_id, [(question_id, "x" * 8001)])
    with pytest.raises(NotFoundError):
        await sessions.submit_answers(uuid.uuid4(), [(question_id, "a")])


async def test_get_session_includes_topic_responses_and_evaluation(sessions, make_topic, session_factory):
    topic = await make_topic(questions=["Q1?", "Q2?"])
    session_id = await sessions.create_session(topic.id, "student-1")
    await sessions.submit_answers(session_id, [(topic.questions[1].id, "two"), (topic.questions[0].id, "one")])

    detail = await sessions.get_session(session_id)
    assert detail.student_id == "student-1"
    assert detail.topic.id == topic.id
    assert [r.answer for r in detail.responses] == ["one", "two"]
    assert detail.evaluation is None

    async with session_factory() as session:
        session.add(Evaluation(session_id=session_id, total_score=Decimal("80.00"), report_json={}))
        await session.commit()

    detail = await sessions.get_session(session_id)
    assert detail.evaluation.total_score == Decimal("80.00")

    with pytest.raises(NotFoundError):
        await sessions.get_session(uuid.uuid4())


async def test_list_sessions_for_student(sessions, make_topic):
    topic_a = await make_topic(title="A")
    topic_b = await make_topic(title="B")
    await sessions.create_session(topic_a.id, "student-1")
    await sessions.create_session(topic_b.id, "student-1")
    await sessions.create_session(topic_a.id, "student-2")

    page = await sessions.list_sessions_for_student("student-1")

    assert page.total == 2
    assert {item.topic_title for item in page.items} == {"A", "B"}
    assert all(item.evaluated is False for item in page.items)

    both = await sessions.list_sessions_for_students(["student-1", "student-2"], page=1, page_size=2)
    assert both.total == 3
    assert len(both.items) == 2

    assert (await sessions.list_sessions_for_students([])).total == 0


@pytest.mark.filterwarnings("error::sqlalchemy.exc.SAWarning")
async def test_class_sessions_and_teacher_overview(sessions, make_topic, session_factory):
    class_id = uuid.uuid4()
    async with session_factory() as session:
        session.add(SchoolClass(id=class_id, name="7B", owner_teacher_id="teacher-1"))
        session.add(SchoolClass(name="8A", owner_teacher_id="teacher-2"))
        session.add_all([
            ClassMember(class_id=class_id, user_id="student-1"),
            ClassMember(class_id=class_id, user_id="student-2"),
        ])
        await session.commit()

    topic = await make_topic(teacher_id="teacher-1")
    s1 = await sessions.create_session(topic.id, "student-1")
    await sessions.create_session(topic.id, "student-2")
    await sessions.create_session(topic.id, "outsider")
    async with session_factory() as session:
        session.add(Evaluation(session_id=s1, total_score=Decimal("90.00"), report_json={}))
        old = await session.get(StudentSession, s1)
        old.started_utc = datetime.now(timezone.utc) - timedelta(days=1)
        await session.commit()

    page = await sessions.list_sessions_for_class(class_id)
    assert page.total == 2
    assert {item.student_id for item in page.items} == {"student-1", "student-2"}
    evaluated = [item for item in page.items if item.evaluated]
    assert [item.id for item in evaluated] == [s1]

    overview = await sessions.teacher_overview("teacher-1")
    assert overview.total_classes == 1
    assert overview.total_students == 2
    assert overview.total_sessions == 2
    assert overview.total_topics == 1
    assert overview.completed_sessions_last_7_days == 1
    assert overview.active_students_last_7_days == 2

    empty = await sessions.teacher_overview("nobody")
    assert (empty.total_classes, empty.total_students, empty.total_sessions) == (0, 0, 0)
