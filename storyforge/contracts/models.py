"""
Versioned data contracts for the generation engine.

GenerationRequest is frozen once built; corrections go through derive(),
which produces a new request linked to its origin. GenerationRecord is the
mutable lifecycle record the orchestrator drives through its states.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storyforge.contracts.errors import ErrorKind, GenerationError, ReasonCode
from storyforge.llm_adapter.models import LLMRequest


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class AgeBand(str, Enum):
    TODDLER = "3-5"
    EARLY = "6-8"
    MIDDLE = "9-12"
    TEEN = "13+"


class Tone(str, Enum):
    FRIENDLY = "friendly"
    ADVENTUROUS = "adventurous"
    EDUCATIONAL = "educational"
    CALMING = "calming"
    EXCITING = "exciting"


class ContentSafetyLevel(str, Enum):
    STRICT = "strict"
    MODERATE = "moderate"
    PERMISSIVE = "permissive"


MAX_THEMES = 10
MAX_THEME_LENGTH = 50
MAX_VOCABULARY_WORDS = 20


class GenerationParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    age_band: AgeBand = AgeBand.EARLY
    target_pages: int = Field(default=10, ge=5, le=20)
    tone: Tone = Tone.FRIENDLY
    themes: tuple[str, ...] = ()
    vocabulary_focus: tuple[str, ...] = ()
    safety_level: ContentSafetyLevel = ContentSafetyLevel.STRICT
    template_id: str | None = None
    template_variables: dict[str, str] = Field(default_factory=dict)

    @field_validator("themes")
    @classmethod
    def _check_themes(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(t.strip() for t in value if t.strip())
        if len(cleaned) > MAX_THEMES:
            raise ValueError(f"at most {MAX_THEMES} themes are allowed")
        for theme in cleaned:
            if len(theme) > MAX_THEME_LENGTH:
                raise ValueError(f"theme '{theme[:20]}...' exceeds {MAX_THEME_LENGTH} chars")
        return cleaned

    @field_validator("vocabulary_focus")
    @classmethod
    def _check_vocabulary(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(w.strip().lower() for w in value if w.strip())
        if len(cleaned) > MAX_VOCABULARY_WORDS:
            raise ValueError(f"at most {MAX_VOCABULARY_WORDS} vocabulary words are allowed")
        return cleaned


class GenerationRequest(BaseModel):
    """One user-initiated ask. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=_new_id)
    requester_id: str = Field(min_length=1)
    target_profile_id: str | None = None
    prompt: str
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    asset_ids: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)
    derived_from: str | None = None

    def normalized_prompt(self) -> str:
        return re.sub(r"\s+", " ", self.prompt).strip().lower()

    def fingerprint(self) -> str:
        """Stable hash over the normalized inputs, used for deduplication."""
        return stable_hash(
            {
                "requester": self.requester_id,
                "profile": self.target_profile_id,
                "prompt": self.normalized_prompt(),
                "parameters": self.parameters.model_dump(mode="json"),
                "assets": sorted(set(self.asset_ids)),
            }
        )

    def derive(self, **changes: Any) -> GenerationRequest:
        """Create a corrected request; the original stays untouched."""
        changes.update(
            request_id=_new_id(),
            created_at=utcnow(),
            derived_from=self.request_id,
        )
        return self.model_validate({**self.model_dump(), **changes})


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.NONE: 0, Severity.LOW: 1, Severity.HIGH: 2}


class Concern(BaseModel):
    category: str
    severity: Severity
    detail: str = ""


class SafetyVerdict(BaseModel):
    stage: str = "post"
    passed: bool
    concerns: list[Concern] = Field(default_factory=list)
    pii_detected: bool = False
    inconclusive: bool = False

    @property
    def max_severity(self) -> Severity:
        if not self.concerns:
            return Severity.NONE
        return max((c.severity for c in self.concerns), key=lambda s: s.rank)

    @property
    def categories(self) -> list[str]:
        return sorted({c.category for c in self.concerns})

    @classmethod
    def from_concerns(
        cls,
        stage: str,
        concerns: list[Concern],
        pii_detected: bool = False,
        inconclusive: bool = False,
    ) -> SafetyVerdict:
        flagged = [c for c in concerns if c.severity != Severity.NONE]
        return cls(
            stage=stage,
            passed=not flagged and not inconclusive,
            concerns=flagged,
            pii_detected=pii_detected,
            inconclusive=inconclusive,
        )


# ---------------------------------------------------------------------------
# Attempts, review, artifacts
# ---------------------------------------------------------------------------


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationAttempt(BaseModel):
    request_id: str
    sequence: int
    provider_id: str
    started_at: datetime
    ended_at: datetime | None = None
    usage: Usage = Field(default_factory=Usage)
    cost: float = 0.0
    outcome: AttemptOutcome
    error_kind: ErrorKind | None = None
    error_message: str = ""


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"


class ReviewDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: ReviewAction
    reviewer_id: str = Field(min_length=1)
    edited_content: str | None = None
    notes: str = ""
    decided_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _edited_content_matches_action(self) -> ReviewDecision:
        if self.action == ReviewAction.EDIT and not (self.edited_content or "").strip():
            raise ValueError("an edit decision requires edited_content")
        if self.action != ReviewAction.EDIT and self.edited_content is not None:
            raise ValueError("edited_content is only accepted with an edit decision")
        return self


class Provenance(str, Enum):
    GENERATED = "generated"
    HUMAN_MODIFIED = "human_modified"


class Artifact(BaseModel):
    request_id: str
    content: str
    provenance: Provenance
    audience_id: str
    created_at: datetime = Field(default_factory=utcnow)


class FailureInfo(BaseModel):
    reason: ReasonCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: GenerationError) -> FailureInfo:
        return cls(reason=error.code, message=error.message, details=error.details)


class QuotaReservation(BaseModel):
    """Optimistic debit taken before generation; refunded on failure."""

    account_id: str
    cost: int
    from_counters: int = 0
    from_bonus: int = 0
    daily_window: datetime
    monthly_window: datetime
    released: bool = False


# ---------------------------------------------------------------------------
# Lifecycle record
# ---------------------------------------------------------------------------


class RequestStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    QUOTA_RESERVED = "quota_reserved"
    GENERATING = "generating"
    SAFETY_CHECKING = "safety_checking"
    READY_FOR_REVIEW = "ready_for_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.EDITED,
        RequestStatus.FAILED,
        RequestStatus.CANCELLED,
    }
)


class StatusTransition(BaseModel):
    from_status: RequestStatus
    to_status: RequestStatus
    at: datetime = Field(default_factory=utcnow)
    reason: str = ""


class GenerationRecord(BaseModel):
    request: GenerationRequest
    status: RequestStatus = RequestStatus.PENDING
    fingerprint: str = ""
    payload: LLMRequest | None = None
    prompt_concerns: list[Concern] = Field(default_factory=list)
    attempts: list[GenerationAttempt] = Field(default_factory=list)
    content: str | None = None
    usage: Usage = Field(default_factory=Usage)
    total_cost: float = 0.0
    verdict: SafetyVerdict | None = None
    requires_strict_review: bool = False
    artifact: Artifact | None = None
    failure: FailureInfo | None = None
    reservation: QuotaReservation | None = None
    decision: ReviewDecision | None = None
    history: list[StatusTransition] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def request_id(self) -> str:
        return self.request.request_id


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class SubmitResult(BaseModel):
    request_id: str
    status: RequestStatus
    failure: FailureInfo | None = None
    deduplicated: bool = False


class StatusView(BaseModel):
    request_id: str
    status: RequestStatus
    attempts: list[GenerationAttempt]
    verdict: SafetyVerdict | None = None
    artifact: Artifact | None = None
    failure: FailureInfo | None = None
    requires_strict_review: bool = False

    @classmethod
    def from_record(cls, record: GenerationRecord) -> StatusView:
        return cls(
            request_id=record.request_id,
            status=record.status,
            attempts=list(record.attempts),
            verdict=record.verdict,
            artifact=record.artifact,
            failure=record.failure,
            requires_strict_review=record.requires_strict_review,
        )


class CancelResult(BaseModel):
    request_id: str
    status: RequestStatus
    cancelled: bool


class DecisionResult(BaseModel):
    request_id: str
    status: RequestStatus
    artifact: Artifact | None = None


class WindowUsage(BaseModel):
    used: int
    limit: int
    reset_at: datetime


class QuotaView(BaseModel):
    account_id: str
    tier: str
    daily: WindowUsage
    monthly: WindowUsage
    bonus_credits: int
    bonus_expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def stable_hash(data: Any) -> str:
    """Produce a deterministic hash of a structure by sorting keys recursively."""
    normalized = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()
