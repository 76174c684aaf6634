import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "console")

import json
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rag_grader.config import settings
from rag_grader.db import init_models
from rag_grader.models import AnswerLevel, GeneratedAnswer, Question, Topic

Scripted = Union[str, Exception, Callable[[str], str]]


def vec(*values: float) -> List[float]:
    """Embedding padded with zeros to the configured dimension"""
    return list(values) + [0.0] * (settings.embedding_dim - len(values))


def generation_response(question_count: int, levels: Sequence[str] = ("low", "low", "medium", "high")) -> str:
    items = []
    for idx in range(question_count):
        items.append({
            "index": idx,
            "answers": [
                {"level": lvl, "score": int(AnswerLevel.parse(lvl)), "text": f"{lvl} answer {n} for q{idx}"}
                for n, lvl in enumerate(levels)
            ],
        })
    return json.dumps({"items": items})


def grading_response(match_level: str, adjustment: int = 0, **extra) -> str:
    payload = {
        "match_level": match_level,
        "adjustment": adjustment,
        "rationale": "Matches the reference.",
        "strengths": ["clear"],
        "recommendations": ["add an example"],
        "advice": "Keep practising.",
    }
    payload.update(extra)
    return json.dumps(payload)


class FakeGateway:
    """Scripted stand-in for LlmGateway that records every call"""

    def __init__(
        self,
        completions: Optional[List[Scripted]] = None,
        responder: Optional[Callable[[str], Scripted]] = None,
        embeddings: Optional[Dict[str, List[float]]] = None,
    ):
        self.completions = list(completions or [])
        self.responder = responder
        self.embeddings = dict(embeddings or {})
        self.prompts: List[tuple] = []
        self.embedded: List[str] = []

    async def complete(self, prompt: str, expect_json: bool = False) -> str:
        self.prompts.append((prompt, expect_json))
        if self.responder is not None:
            item = self.responder(prompt)
        elif self.completions:
            item = self.completions.pop(0)
        else:
            raise AssertionError("unexpected completion call")
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(prompt)
        return item

    async def embed(self, text: str) -> List[float]:
        self.embedded.append(text)
        if text not in self.embeddings:
            raise AssertionError(f"no embedding scripted for {text!r}")
        item = self.embeddings[text]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rag_grader.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_topic(session_factory):
    """Insert a topic directly; ``answers`` maps question index to (level, text) pairs"""

    async def _make(
        questions: Sequence[str] = ("What is photosynthesis?",),
        answers: Optional[Dict[int, List[tuple]]] = None,
        teacher_id: Optional[str] = "teacher-1",
        title: str = "Plants",
    ) -> Topic:
        topic = Topic(title=title, teacher_id=teacher_id)
        built = []
        for idx, text in enumerate(questions):
            refs = answers.get(idx, []) if answers is not None else [
                (AnswerLevel.HIGH, f"high answer {idx}"),
                (AnswerLevel.MEDIUM, f"medium answer {idx}"),
                (AnswerLevel.LOW, f"low answer {idx} a"),
                (AnswerLevel.LOW, f"low answer {idx} b"),
            ]
            built.append(Question(
                position=idx,
                text=text,
                generated=[GeneratedAnswer(level=int(level), text=body) for level, body in refs],
            ))
        topic.questions = built
        async with session_factory() as session:
            session.add(topic)
            await session.commit()
        return topic

    return _make
