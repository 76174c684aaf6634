"""
Shared FastAPI dependencies: caller identity, database session and access guards
"""
from typing import AsyncIterator, Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from rag_grader.core import authorization
from rag_grader.core.exceptions import ForbiddenError, NotFoundError
from rag_grader.db import async_session


async def get_caller_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    """Caller identity forwarded by the upstream auth gateway"""
    caller = (x_user_id or "").strip()
    if not caller:
        raise ForbiddenError("Missing caller identity")
    return caller


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def require_session_owner(
    session_id: UUID,
    caller_id: str = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> str:
    if await authorization.session_student_id(db, session_id) is None:
        raise NotFoundError("Session not found", {"session_id": str(session_id)})
    if not await authorization.can_access_session(db, caller_id, session_id):
        raise ForbiddenError("Session belongs to another student")
    return caller_id


async def require_teacher_over_session(
    session_id: UUID,
    caller_id: str = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> str:
    if await authorization.session_student_id(db, session_id) is None:
        raise NotFoundError("Session not found", {"session_id": str(session_id)})
    if not await authorization.teacher_over_session(db, caller_id, session_id=session_id):
        raise ForbiddenError("Student is not in any of your classes")
    return caller_id


async def require_teacher_over_student(
    student_id: str,
    caller_id: str = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> str:
    if not await authorization.teacher_over_session(db, caller_id, student_id=student_id):
        raise ForbiddenError("Student is not in any of your classes")
    return caller_id


async def require_class_owner(
    class_id: UUID,
    caller_id: str = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
) -> str:
    if not await authorization.owns_class(db, caller_id, class_id):
        raise ForbiddenError("Class is not owned by caller")
    return caller_id
