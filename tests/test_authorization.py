import uuid

import pytest

from rag_grader.core import authorization
from rag_grader.core.sessions import SessionService
from rag_grader.models import ClassMember, SchoolClass


@pytest.fixture
async def roster(session_factory, make_topic):
    """teacher-1 owns a class with student-1; student-2 is in teacher-2's class"""
    own_class, other_class = uuid.uuid4(), uuid.uuid4()
    async with session_factory() as session:
        session.add_all([
            SchoolClass(id=own_class, name="7B", owner_teacher_id="teacher-1"),
            SchoolClass(id=other_class, name="8A", owner_teacher_id="teacher-2"),
        ])
        await session.flush()
        session.add_all([
            ClassMember(class_id=own_class, user_id="student-1"),
            ClassMember(class_id=other_class, user_id="student-2"),
        ])
        await session.commit()

    topic = await make_topic()
    service = SessionService(session_factory=session_factory)
    return {
        "own_class": own_class,
        "other_class": other_class,
        "session_1": await service.create_session(topic.id, "student-1"),
        "session_2": await service.create_session(topic.id, "student-2"),
    }


async def test_session_owner(session_factory, roster):
    async with session_factory() as db:
        assert await authorization.can_access_session(db, "student-1", roster["session_1"])
        assert not await authorization.can_access_session(db, "student-2", roster["session_1"])
        assert not await authorization.can_access_session(db, "", roster["session_1"])
        assert not await authorization.can_access_session(db, "student-1", uuid.uuid4())


async def test_teacher_over_student(session_factory, roster):
    async with session_factory() as db:
        assert await authorization.is_teacher_of_student(db, "teacher-1", "student-1")
        assert not await authorization.is_teacher_of_student(db, "teacher-1", "student-2")
        assert not await authorization.is_teacher_of_student(db, "student-1", "student-1")


async def test_teacher_over_session_resolves_student_from_session(session_factory, roster):
    async with session_factory() as db:
        assert await authorization.teacher_over_session(db, "teacher-1", session_id=roster["session_1"])
        assert not await authorization.teacher_over_session(db, "teacher-1", session_id=roster["session_2"])
        assert await authorization.teacher_over_session(db, "teacher-2", student_id="student-2")
        assert not await authorization.teacher_over_session(db, "teacher-2", session_id=uuid.uuid4())
        assert not await authorization.teacher_over_session(db, "teacher-2")


async def test_membership_changes_are_seen_immediately(session_factory, roster):
    async with session_factory() as db:
        assert not await authorization.is_teacher_of_student(db, "teacher-1", "student-2")

    async with session_factory() as db:
        db.add(ClassMember(class_id=roster["own_class"], user_id="student-2"))
        await db.commit()

    async with session_factory() as db:
        assert await authorization.is_teacher_of_student(db, "teacher-1", "student-2")


async def test_owns_class(session_factory, roster):
    async with session_factory() as db:
        assert await authorization.owns_class(db, "teacher-1", roster["own_class"])
        assert not await authorization.owns_class(db, "teacher-1", roster["other_class"])
        assert not await authorization.owns_class(db, "teacher-1", uuid.uuid4())
