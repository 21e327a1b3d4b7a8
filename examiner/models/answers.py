"""
Typed answer values.

Answers are stored as loose JSON (a string option id, a list of option ids, or
a number). They are parsed into one of the variants below when records are
loaded, so grading never has to inspect raw JSON.
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Single:
    value: str


@dataclass(frozen=True)
class Multiple:
    values: frozenset[str]


@dataclass(frozen=True)
class Numeric:
    value: float


@dataclass(frozen=True)
class Empty:
    pass


@dataclass(frozen=True)
class Unparseable:
    """A non-empty answer of a shape grading does not understand. Counts as attempted."""

    shape: str


EMPTY = Empty()

Answer = Single | Multiple | Numeric | Empty | Unparseable

_DECIMAL = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _number_text(value: float) -> str:
    # 2.0 -> "2" so an option id stored as a JSON number matches its string form
    if math.isfinite(value) and value.is_integer():
        return str(int(value))
    return repr(value)


def _item_text(item: Any) -> str:
    if isinstance(item, bool):
        return "true" if item else "false"
    if isinstance(item, (int, float)):
        return _number_text(float(item))
    return str(item)


def parse_answer(raw: Any) -> Answer:
    if raw is None:
        return EMPTY
    if isinstance(raw, bool):
        return Single(_item_text(raw))
    if isinstance(raw, (int, float)):
        return Numeric(float(raw))
    if isinstance(raw, str):
        if not raw.strip():
            return EMPTY
        return Single(raw)
    if isinstance(raw, (list, tuple, set, frozenset)):
        values = frozenset(_item_text(item) for item in raw if item is not None)
        if not values:
            return EMPTY
        return Multiple(values)
    if not raw:
        return EMPTY
    logger.warning("Unsupported answer shape", extra={"answer_type": type(raw).__name__})
    return Unparseable(type(raw).__name__)


def parse_answer_key(answers: dict[str, Any] | None) -> dict[str, Answer]:
    """Parse an answer-key document. Keys are question ids as strings."""
    if not answers:
        return {}
    return {str(question_id): parse_answer(value) for question_id, value in answers.items()}


def as_text(answer: Answer) -> str | None:
    """String form used for single-choice comparison."""
    if isinstance(answer, Single):
        return answer.value
    if isinstance(answer, Numeric):
        return _number_text(answer.value)
    if isinstance(answer, Multiple) and len(answer.values) == 1:
        return next(iter(answer.values))
    return None


def as_choices(answer: Answer) -> tuple[str, ...]:
    """Sorted option ids used for multiple-choice comparison."""
    if isinstance(answer, Multiple):
        return tuple(sorted(answer.values))
    text = as_text(answer)
    return (text,) if text is not None else ()


def as_number(answer: Answer) -> float | None:
    """Float form used for numerical comparison; None when unparseable."""
    if isinstance(answer, Numeric):
        value = answer.value
    else:
        text = as_text(answer)
        if text is None:
            return None
        text = text.strip()
        # float() alone would also accept "1_0", "inf" and "nan"
        if not _DECIMAL.fullmatch(text):
            return None
        value = float(text)
    if not math.isfinite(value):
        return None
    return value


def to_json(answer: Answer) -> str | list[str] | float | None:
    if isinstance(answer, Single):
        return answer.value
    if isinstance(answer, Multiple):
        return sorted(answer.values)
    if isinstance(answer, Numeric):
        return answer.value
    return None
