"""
Analytics helpers for cross-session comparison
"""
from typing import Any, Hashable, TypeVar
import statistics

K = TypeVar("K", bound=Hashable)


def compute_standings(scores: dict[K, float]) -> dict[K, tuple[int, float]]:
    """
    Rank and percentile for every entry of an exam

    Args:
        scores: mapping of any key (usually a session id) to marks obtained

    Returns:
        key -> (rank, percentile). Equal scores share a rank (1, 2, 2, 4).
        Percentile is the share of entries scoring at or below the entry.
    """
    if not scores:
        return {}

    total = len(scores)
    ordered = sorted(scores.values(), reverse=True)
    ascending = sorted(scores.values())

    first_position: dict[float, int] = {}
    for position, value in enumerate(ordered, start=1):
        first_position.setdefault(value, position)

    at_or_below: dict[float, int] = {}
    for count, value in enumerate(ascending, start=1):
        at_or_below[value] = count

    return {
        key: (first_position[value], round(at_or_below[value] / total * 100, 2))
        for key, value in scores.items()
    }


def exam_statistics(scores: list[float], total_marks: float | None = None) -> dict[str, Any]:
    """
    Exam-wide score statistics

    Args:
        scores: marks obtained by every evaluated session
        total_marks: maximum marks for the exam, used for the average percentage

    Returns:
        dict with exam-wide analytics
    """
    if not scores:
        return {"total_students": 0}

    avg_score = statistics.mean(scores)
    result = {
        "total_students": len(scores),
        "average_score": round(avg_score, 2),
        "median_score": round(statistics.median(scores), 2),
        "highest_score": max(scores),
        "lowest_score": min(scores),
        "standard_deviation": round(statistics.stdev(scores), 2) if len(scores) > 1 else 0,
    }
    if total_marks:
        result["average_percentage"] = round(avg_score / total_marks * 100, 2)
    return result
