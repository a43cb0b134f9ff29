"""
Request lifecycle transitions.

The table is the single source of truth: every status change goes through
``advance()``, which raises IllegalTransitionError for anything not listed.
FAILED is reachable from every non-terminal status because an unexpected
fault can happen at any step.
"""

from __future__ import annotations

from storyforge.contracts.errors import InternalError
from storyforge.contracts.models import (
    GenerationRecord,
    RequestStatus,
    StatusTransition,
    utcnow,
)

S = RequestStatus

TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    S.PENDING: frozenset({S.VALIDATING, S.CANCELLED, S.FAILED}),
    S.VALIDATING: frozenset({S.QUOTA_RESERVED, S.CANCELLED, S.FAILED}),
    # REJECTED here is a pre-generation safety rejection
    S.QUOTA_RESERVED: frozenset({S.GENERATING, S.REJECTED, S.CANCELLED, S.FAILED}),
    S.GENERATING: frozenset({S.SAFETY_CHECKING, S.CANCELLED, S.FAILED}),
    S.SAFETY_CHECKING: frozenset({S.READY_FOR_REVIEW, S.REJECTED, S.FAILED}),
    S.READY_FOR_REVIEW: frozenset({S.APPROVED, S.REJECTED, S.EDITED, S.FAILED}),
    S.APPROVED: frozenset(),
    S.REJECTED: frozenset(),
    S.EDITED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

CANCELLABLE = frozenset({S.PENDING, S.VALIDATING, S.QUOTA_RESERVED, S.GENERATING})


class IllegalTransitionError(InternalError):

    def __init__(self, request_id: str, from_status: RequestStatus, to_status: RequestStatus) -> None:
        super().__init__(
            f"Illegal transition {from_status.value} -> {to_status.value} for {request_id}",
            request_id=request_id,
            from_status=from_status.value,
            to_status=to_status.value,
        )


def is_allowed(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    return to_status in TRANSITIONS[from_status]


def advance(record: GenerationRecord, to_status: RequestStatus, reason: str = "") -> StatusTransition:
    """Move the record to ``to_status`` and append the transition to its history."""
    from_status = record.status
    if not is_allowed(from_status, to_status):
        raise IllegalTransitionError(record.request_id, from_status, to_status)
    if to_status == S.READY_FOR_REVIEW:
        _check_review_guard(record)

    now = utcnow()
    transition = StatusTransition(from_status=from_status, to_status=to_status, at=now, reason=reason)
    record.status = to_status
    record.history.append(transition)
    record.updated_at = now
    return transition


def _check_review_guard(record: GenerationRecord) -> None:
    verdict = record.verdict
    if verdict is None or record.content is None:
        raise IllegalTransitionError(record.request_id, record.status, S.READY_FOR_REVIEW)
    if not verdict.passed and not record.requires_strict_review:
        raise IllegalTransitionError(record.request_id, record.status, S.READY_FOR_REVIEW)
