import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from examiner.models.answers import (
    EMPTY,
    Answer,
    Empty,
    Unparseable,
    as_choices,
    as_number,
    as_text,
    parse_answer,
)

logger = logging.getLogger(__name__)

NUMERIC_TOLERANCE = 0.001
DEFAULT_SECTION = "default"

QUESTION_TYPE_ALIASES = {
    "numeric": "numerical",
}


class Verdict(str, enum.Enum):
    UNATTEMPTED = "unattempted"
    CORRECT = "correct"
    INCORRECT = "incorrect"


def _coerce_number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return number


def question_marks(value: Any) -> float:
    # Missing, non-numeric and zero marks all count as 1
    return _coerce_number(value) or 1.0


def question_negative_marks(value: Any) -> float:
    return _coerce_number(value)


@dataclass(frozen=True)
class QuestionSpec:
    id: str
    question_type: str
    correct_answer: Answer = EMPTY
    marks: float = 1.0
    negative_marks: float = 0.0
    section_id: str | None = None

    @classmethod
    def from_record(
        cls,
        id: Any,
        question_type: str,
        correct_answer: Any = None,
        marks: Any = None,
        negative_marks: Any = None,
        section_id: Any = None,
    ) -> "QuestionSpec":
        return cls(
            id=str(id),
            question_type=QUESTION_TYPE_ALIASES.get(question_type, question_type),
            correct_answer=parse_answer(correct_answer),
            marks=question_marks(marks),
            negative_marks=question_negative_marks(negative_marks),
            section_id=str(section_id) if section_id is not None else None,
        )

    @property
    def section(self) -> str:
        return self.section_id or DEFAULT_SECTION


def resolve_answer(question: QuestionSpec, answer_key: Mapping[str, Answer]) -> Answer:
    """The answer key wins over the stored answer, even when its entry is empty."""
    if question.id in answer_key:
        return answer_key[question.id]
    return question.correct_answer


def grade_answer(question_type: str, selected: Answer, correct: Answer) -> Verdict:
    if isinstance(selected, Empty):
        return Verdict.UNATTEMPTED
    # Unconfigured questions and unreadable answers never award marks
    if isinstance(correct, (Empty, Unparseable)) or isinstance(selected, Unparseable):
        return Verdict.INCORRECT

    if question_type in ("single_correct", "true_false"):
        student = as_text(selected)
        is_correct = student is not None and student == as_text(correct)
    elif question_type == "multiple_correct":
        student_choices = as_choices(selected)
        is_correct = bool(student_choices) and student_choices == as_choices(correct)
    elif question_type == "numerical":
        student_value = as_number(selected)
        correct_value = as_number(correct)
        is_correct = (
            student_value is not None
            and correct_value is not None
            and abs(student_value - correct_value) < NUMERIC_TOLERANCE
        )
    else:
        logger.warning("Unknown question type graded as incorrect", extra={"question_type": question_type})
        is_correct = False
    return Verdict.CORRECT if is_correct else Verdict.INCORRECT


@dataclass
class SectionScore:
    correct: int = 0
    wrong: int = 0
    marks: float = 0.0
    total: float = 0.0

    def to_dict(self) -> dict:
        return {"correct": self.correct, "wrong": self.wrong, "marks": self.marks, "total": self.total}


@dataclass(frozen=True)
class QuestionOutcome:
    question_id: str
    section: str
    verdict: Verdict
    marks_delta: float


@dataclass
class ScoreCard:
    total_questions: int = 0
    attempted: int = 0
    correct: int = 0
    wrong: int = 0
    skipped: int = 0
    total_marks: float = 0.0
    marks_obtained: float = 0.0
    percentage: float = 0.0
    accuracy: float = 0.0
    section_wise_scores: dict[str, SectionScore] = field(default_factory=dict)
    outcomes: list[QuestionOutcome] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "total_questions": self.total_questions,
            "attempted": self.attempted,
            "correct": self.correct,
            "wrong": self.wrong,
            "skipped": self.skipped,
            "marks_obtained": self.marks_obtained,
            "total_marks": self.total_marks,
            "percentage": self.percentage,
            "accuracy": self.accuracy,
        }

    def sections_document(self) -> dict[str, dict]:
        return {section: score.to_dict() for section, score in self.section_wise_scores.items()}


def round2(value: float) -> float:
    # Half-up rounding, not banker's rounding
    return math.floor(value * 100 + 0.5) / 100


def aggregate(
    questions: Iterable[QuestionSpec],
    responses: Mapping[str, Answer],
    answer_key: Mapping[str, Answer],
    negative_marking: bool,
) -> ScoreCard:
    card = ScoreCard()
    total_parts: list[float] = []
    obtained_parts: list[float] = []
    section_totals: dict[str, list[float]] = {}
    section_marks: dict[str, list[float]] = {}

    for question in questions:
        card.total_questions += 1
        section = question.section
        bucket = card.section_wise_scores.setdefault(section, SectionScore())
        total_parts.append(question.marks)
        section_totals.setdefault(section, []).append(question.marks)
        section_marks.setdefault(section, [])

        correct_answer = resolve_answer(question, answer_key)
        selected = responses.get(question.id, EMPTY)
        verdict = grade_answer(question.question_type, selected, correct_answer)

        delta = 0.0
        if verdict is Verdict.UNATTEMPTED:
            card.skipped += 1
        else:
            card.attempted += 1
            if verdict is Verdict.CORRECT:
                card.correct += 1
                bucket.correct += 1
                delta = question.marks
            else:
                card.wrong += 1
                bucket.wrong += 1
                if isinstance(correct_answer, Empty):
                    logger.debug(
                        "Attempted question has no correct answer",
                        extra={"question_id": question.id},
                    )
                if negative_marking and question.negative_marks > 0:
                    delta = -question.negative_marks
        if delta:
            obtained_parts.append(delta)
            section_marks[section].append(delta)
        card.outcomes.append(QuestionOutcome(question.id, section, verdict, delta))

    # fsum keeps the sums independent of question order
    card.total_marks = math.fsum(total_parts)
    card.marks_obtained = math.fsum(obtained_parts)
    for section, bucket in card.section_wise_scores.items():
        bucket.total = math.fsum(section_totals[section])
        bucket.marks = math.fsum(section_marks[section])

    percentage = card.marks_obtained / card.total_marks * 100 if card.total_marks > 0 else 0.0
    accuracy = card.correct / card.attempted * 100 if card.attempted > 0 else 0.0
    card.percentage = round2(percentage)
    card.accuracy = round2(accuracy)
    return card
