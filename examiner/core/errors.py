"""
Failures that abort an evaluation.

Problems confined to one question (bad numbers, missing marks, no correct
answer) never show up here; the aggregator absorbs them.
"""
from fastapi import status


class EvaluationError(Exception):
    kind = "evaluation_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


class InvalidRequest(EvaluationError):
    kind = "invalid_request"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(EvaluationError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(EvaluationError):
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class DependencyFailure(EvaluationError):
    """The database failed or timed out. Retrying the whole call is safe."""

    kind = "dependency_failure"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
