"""
Resource-based capability checks, evaluated against current rows on every call
"""
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rag_grader.models import ClassMember, SchoolClass, StudentSession


async def session_student_id(db: AsyncSession, session_id: UUID) -> Optional[str]:
    return await db.scalar(select(StudentSession.student_id).where(StudentSession.id == session_id))


async def can_access_session(db: AsyncSession, caller_id: str, session_id: UUID) -> bool:
    """Session owner: the caller is the session's student"""
    if not caller_id:
        return False
    owner = await session_student_id(db, session_id)
    return owner is not None and owner == caller_id


async def is_teacher_of_student(db: AsyncSession, teacher_id: str, student_id: str) -> bool:
    """The teacher owns at least one class the student is a member of"""
    if not teacher_id or not student_id:
        return False
    match = await db.scalar(
        select(ClassMember.class_id)
        .join(SchoolClass, SchoolClass.id == ClassMember.class_id)
        .where(SchoolClass.owner_teacher_id == teacher_id, ClassMember.user_id == student_id)
        .limit(1)
    )
    return match is not None


async def teacher_over_session(
    db: AsyncSession,
    teacher_id: str,
    session_id: Optional[UUID] = None,
    student_id: Optional[str] = None,
) -> bool:
    """Teacher over student, with the student taken from the session when one is given"""
    if session_id is not None:
        student_id = await session_student_id(db, session_id)
    if not student_id:
        return False
    return await is_teacher_of_student(db, teacher_id, student_id)


async def owns_class(db: AsyncSession, teacher_id: str, class_id: UUID) -> bool:
    if not teacher_id:
        return False
    owner = await db.scalar(select(SchoolClass.owner_teacher_id).where(SchoolClass.id == class_id))
    return owner is not None and owner == teacher_id
