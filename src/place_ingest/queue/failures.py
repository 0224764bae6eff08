"""Task handler error taxonomy and deterministic retry classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """Normalized failure classes used by the worker's routing policy."""

    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    NON_RETRYABLE = "non_retryable"


class PlaceNotFoundError(Exception):
    """The place a task targets no longer exists upstream."""

    def __init__(self, place_id: int, place_name: str | None = None, message: str = "") -> None:
        self.place_id = place_id
        self.place_name = place_name
        detail = message or "place not found"
        label = f"{place_id} ({place_name})" if place_name else str(place_id)
        super().__init__(f"Place {label}: {detail}")


class NonRetryableTaskError(Exception):
    """Handler failure that must not be retried."""


@dataclass(slots=True)
class TaskFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT


def classify_task_failure(error: BaseException) -> TaskFailureClassification:
    """Classify a handler exception into a deterministic routing class."""

    if isinstance(error, PlaceNotFoundError):
        return TaskFailureClassification(
            failure_class=FailureClass.NOT_FOUND,
            reason_code="place_not_found",
            matched_rule="place_not_found_error",
        )
    if isinstance(error, NonRetryableTaskError):
        return TaskFailureClassification(
            failure_class=FailureClass.NON_RETRYABLE,
            reason_code=_reason_code(error),
            matched_rule="non_retryable_error",
        )
    return TaskFailureClassification(
        failure_class=FailureClass.TRANSIENT,
        reason_code=_reason_code(error),
        matched_rule="fallback_transient",
    )


def summarize_error(error: BaseException, *, limit: int) -> str:
    """Render an exception as a single bounded line for progress records."""

    text = str(error).strip() or type(error).__name__
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[:limit]


def _reason_code(error: BaseException) -> str:
    name = type(error).__name__
    out: list[str] = []
    for index, char in enumerate(name):
        if char.isupper() and index > 0 and not name[index - 1].isupper():
            out.append("_")
        out.append(char.lower())
    return "".join(out)
