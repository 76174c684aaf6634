"""
Prompt builders for reference-answer generation, grading and conspectus writing
"""
from typing import Iterable, List, Sequence, Tuple
import json

from rag_grader.models import AnswerLevel

# Two lows, one medium, one high per question
EXPECTED_LEVELS: Tuple[AnswerLevel, ...] = (
    AnswerLevel.LOW,
    AnswerLevel.LOW,
    AnswerLevel.MEDIUM,
    AnswerLevel.HIGH,
)


def _language_rules(language: str) -> str:
    return (
        f"Language: write everything in {language}. "
        f"Do not mix languages; do not switch to another language for terms, examples or headers."
    )


def build_generation_prompt(title: str, questions: Sequence[str], language: str = "English") -> str:
    """Batch prompt: four leveled reference answers for every question of a topic."""
    numbered = "\n".join(f"[{idx}] {q.strip()}" for idx, q in enumerate(questions))
    example = {
        "items": [
            {
                "index": 0,
                "answers": [
                    {"level": lvl.label, "score": int(lvl), "text": "..."} for lvl in EXPECTED_LEVELS
                ],
            }
        ]
    }
    return (
        "You are creating calibrated reference answers for middle school critical thinking questions.\n"
        f"{_language_rules(language)}\n\n"
        f"Topic: {title.strip()}\n\n"
        "Questions (zero-based index in brackets):\n"
        f"{numbered}\n\n"
        "For EVERY question produce exactly four distinct answers:\n"
        "- levels: exactly two 'low', one 'medium', one 'high'\n"
        f"- score: {int(AnswerLevel.LOW)} for low, {int(AnswerLevel.MEDIUM)} for medium, "
        f"{int(AnswerLevel.HIGH)} for high\n"
        "- text: the answer itself; answers must differ in reasoning and depth\n\n"
        "Output STRICT JSON with a single key 'items': one item per question, where 'index' is the "
        "question's index above and 'answers' holds its four answers.\n"
        f"Example: {json.dumps(example, ensure_ascii=False)}\n\n"
        "Do not add keys beyond index, answers, level, score and text. "
        "No commentary, markdown or text outside the JSON."
    )


def build_evaluation_prompt(
    question: str,
    student_answer: str,
    references: Iterable[Tuple[AnswerLevel, str]],
    language: str = "English",
) -> str:
    """Grading prompt for one student answer against the leveled reference set."""
    ref_lines: List[str] = []
    for level, text in references:
        ref_lines.append(f"- level: {level.label}, score: {int(level)}\n  text: {text.strip()}")
    refs = "\n\n".join(ref_lines)

    return (
        "You are an impartial grader for middle school critical thinking.\n\n"
        f"Question:\n{question.strip()}\n\n"
        f"Student answer:\n{student_answer.strip()}\n\n"
        "Reference answers with levels and anchor scores:\n"
        f"{refs}\n\n"
        "Scoring policy (STRICT):\n"
        "1) Decide which single reference level the student's answer most closely matches: "
        "low (50), medium (75) or high (100).\n"
        "2) Set 'base' to exactly that level's anchor score.\n"
        "3) Choose an integer 'adjustment' in the range -5..+5 for clarity, evidence and structure.\n"
        "4) Set 'score' = base + adjustment, clamped to 0..100.\n\n"
        "Also provide:\n"
        "- 'rationale': why this level was chosen, at most 3 sentences\n"
        "- 'strengths': short bullet strings\n"
        "- 'recommendations': concrete actionable bullet strings\n"
        "- 'advice': one short paragraph with next steps\n\n"
        "Output STRICT JSON only:\n"
        "{\n"
        '  "match_level": "low|medium|high",\n'
        '  "base": 50|75|100,\n'
        '  "adjustment": <integer -5..5>,\n'
        '  "score": <integer 0..100>,\n'
        '  "rationale": "...",\n'
        '  "strengths": ["..."],\n'
        '  "recommendations": ["..."],\n'
        '  "advice": "..."\n'
        "}\n\n"
        f"{_language_rules(language)}\n"
        "No text outside the JSON."
    )


def build_conspectus_prompt(title: str, questions: Sequence[str], language: str = "English") -> str:
    """Plain-text study conspectus covering the topic's guiding questions."""
    guiding = "\n".join(f"- {q.strip()}" for q in questions if q and q.strip())
    return (
        "You are a middle-school educator. Write a comprehensive yet concise lesson conspectus "
        "on the topic below. The style should be clear, structured and actionable.\n"
        f"{_language_rules(language)}\n\n"
        f"Topic: {title.strip()}\n\n"
        "Guiding questions to cover:\n"
        f"{guiding}\n\n"
        "Write a single continuous conspectus with:\n"
        "- 6-10 short sections, each starting with a header line\n"
        "- key definitions, short examples and common misconceptions\n"
        "- quick check questions\n"
        "- a final section of 3-5 actionable tips\n\n"
        "Output plain text only: no JSON, no markdown markup, no meta commentary."
    )
