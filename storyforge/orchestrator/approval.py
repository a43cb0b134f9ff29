"""
Human approval workflow.

A draft becomes a usable artifact only through a ReviewDecision. The
workflow decides the terminal status and the artifact; the orchestrator
owns locking, persistence and notifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storyforge.contracts.errors import InvalidStateError, ReasonCode
from storyforge.contracts.models import (
    Artifact,
    FailureInfo,
    GenerationRecord,
    Provenance,
    RequestStatus,
    ReviewAction,
    ReviewDecision,
)

logger = logging.getLogger(__name__)

_STATUS_FOR_ACTION = {
    ReviewAction.APPROVE: RequestStatus.APPROVED,
    ReviewAction.REJECT: RequestStatus.REJECTED,
    ReviewAction.EDIT: RequestStatus.EDITED,
}


@dataclass(frozen=True)
class ReviewOutcome:
    status: RequestStatus
    artifact: Artifact | None
    failure: FailureInfo | None = None


class ApprovalWorkflow:

    def evaluate(self, record: GenerationRecord, decision: ReviewDecision) -> ReviewOutcome:
        if record.status != RequestStatus.READY_FOR_REVIEW or record.content is None:
            raise InvalidStateError(record.request_id, record.status.value, "review")

        audience = record.request.target_profile_id or record.request.requester_id
        status = _STATUS_FOR_ACTION[decision.action]

        if decision.action == ReviewAction.APPROVE:
            artifact = Artifact(
                request_id=record.request_id,
                content=record.content,
                provenance=Provenance.GENERATED,
                audience_id=audience,
                created_at=decision.decided_at,
            )
            return ReviewOutcome(status=status, artifact=artifact)

        if decision.action == ReviewAction.EDIT:
            artifact = Artifact(
                request_id=record.request_id,
                content=decision.edited_content or "",
                provenance=Provenance.HUMAN_MODIFIED,
                audience_id=audience,
                created_at=decision.decided_at,
            )
            return ReviewOutcome(status=status, artifact=artifact)

        failure = FailureInfo(
            reason=ReasonCode.REVIEW_REJECTED,
            message="Draft rejected by reviewer",
            details={"reviewer_id": decision.reviewer_id, "notes": decision.notes},
        )
        return ReviewOutcome(status=status, artifact=None, failure=failure)

    @staticmethod
    def pending(records: list[GenerationRecord]) -> list[GenerationRecord]:
        """Drafts awaiting review, strict-review ones first, oldest first."""
        waiting = [r for r in records if r.status == RequestStatus.READY_FOR_REVIEW]
        return sorted(waiting, key=lambda r: (not r.requires_strict_review, r.updated_at))
