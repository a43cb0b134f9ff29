"""
Generation store -- persistence collaborator of the orchestrator.

The full GenerationRecord is stored as a JSON snapshot so a restarted
process can resume it from its last status. Attempts and review decisions
are additionally written as rows of their own for auditing and reporting.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from sqlalchemy import select

from storyforge.contracts.models import GenerationRecord, RequestStatus
from storyforge.persistence.database import (
    AttemptRow,
    GenerationRow,
    QuotaAccountRow,
    ReviewDecisionRow,
    close_db,
    get_session,
    init_db,
)
from storyforge.quota.ledger import QuotaAccount

logger = logging.getLogger(__name__)


class GenerationStore(ABC):

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def save(self, record: GenerationRecord) -> None: ...

    @abstractmethod
    async def get(self, request_id: str) -> GenerationRecord | None: ...

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[RequestStatus]) -> list[GenerationRecord]: ...

    @abstractmethod
    async def save_quota_account(self, account: QuotaAccount) -> None: ...

    @abstractmethod
    async def load_quota_accounts(self) -> list[QuotaAccount]: ...


class InMemoryGenerationStore(GenerationStore):
    """Keeps serialized snapshots so callers never share mutable records."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._accounts: dict[str, str] = {}

    async def save(self, record: GenerationRecord) -> None:
        self._records[record.request_id] = record.model_dump_json()

    async def get(self, request_id: str) -> GenerationRecord | None:
        raw = self._records.get(request_id)
        return GenerationRecord.model_validate_json(raw) if raw else None

    async def list_by_status(self, statuses: Iterable[RequestStatus]) -> list[GenerationRecord]:
        wanted = set(statuses)
        records = [GenerationRecord.model_validate_json(raw) for raw in self._records.values()]
        return [r for r in records if r.status in wanted]

    async def save_quota_account(self, account: QuotaAccount) -> None:
        self._accounts[account.account_id] = account.model_dump_json()

    async def load_quota_accounts(self) -> list[QuotaAccount]:
        return [QuotaAccount.model_validate_json(raw) for raw in self._accounts.values()]


class SQLGenerationStore(GenerationStore):

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url

    async def initialize(self) -> None:
        await init_db(self._database_url)
        logger.info("Generation store ready")

    async def close(self) -> None:
        await close_db()

    async def save(self, record: GenerationRecord) -> None:
        async with get_session() as session:
            row = await session.get(GenerationRow, record.request_id)
            if row:
                row.status = record.status.value
                row.record = record.model_dump_json()
                row.updated_at = record.updated_at
            else:
                session.add(
                    GenerationRow(
                        request_id=record.request_id,
                        requester_id=record.request.requester_id,
                        status=record.status.value,
                        fingerprint=record.fingerprint,
                        record=record.model_dump_json(),
                        created_at=record.request.created_at,
                        updated_at=record.updated_at,
                    )
                )

            if record.attempts:
                result = await session.execute(
                    select(AttemptRow.sequence).where(AttemptRow.request_id == record.request_id)
                )
                stored = set(result.scalars().all())
                for attempt in record.attempts:
                    if attempt.sequence in stored:
                        continue
                    session.add(
                        AttemptRow(
                            request_id=attempt.request_id,
                            sequence=attempt.sequence,
                            provider_id=attempt.provider_id,
                            outcome=attempt.outcome.value,
                            error_kind=attempt.error_kind.value if attempt.error_kind else "",
                            error_message=attempt.error_message,
                            total_tokens=attempt.usage.total_tokens,
                            cost=attempt.cost,
                            started_at=attempt.started_at,
                            ended_at=attempt.ended_at,
                        )
                    )

            decision = record.decision
            if decision is not None and await session.get(ReviewDecisionRow, record.request_id) is None:
                session.add(
                    ReviewDecisionRow(
                        request_id=record.request_id,
                        action=decision.action.value,
                        reviewer_id=decision.reviewer_id,
                        notes=decision.notes,
                        edited_content=decision.edited_content,
                        decided_at=decision.decided_at,
                    )
                )
            await session.commit()

    async def get(self, request_id: str) -> GenerationRecord | None:
        async with get_session() as session:
            row = await session.get(GenerationRow, request_id)
            return GenerationRecord.model_validate_json(row.record) if row else None

    async def list_by_status(self, statuses: Iterable[RequestStatus]) -> list[GenerationRecord]:
        values = [s.value for s in statuses]
        async with get_session() as session:
            result = await session.execute(
                select(GenerationRow)
                .where(GenerationRow.status.in_(values))
                .order_by(GenerationRow.created_at)
            )
            return [GenerationRecord.model_validate_json(r.record) for r in result.scalars().all()]

    async def attempt_rows(self, request_id: str) -> list[AttemptRow]:
        async with get_session() as session:
            result = await session.execute(
                select(AttemptRow)
                .where(AttemptRow.request_id == request_id)
                .order_by(AttemptRow.sequence)
            )
            return list(result.scalars().all())

    async def decision_row(self, request_id: str) -> ReviewDecisionRow | None:
        async with get_session() as session:
            return await session.get(ReviewDecisionRow, request_id)

    async def save_quota_account(self, account: QuotaAccount) -> None:
        async with get_session() as session:
            row = await session.get(QuotaAccountRow, account.account_id)
            if row:
                row.tier = account.tier
                row.account = account.model_dump_json()
            else:
                session.add(
                    QuotaAccountRow(
                        account_id=account.account_id,
                        tier=account.tier,
                        account=account.model_dump_json(),
                    )
                )
            await session.commit()

    async def load_quota_accounts(self) -> list[QuotaAccount]:
        async with get_session() as session:
            result = await session.execute(select(QuotaAccountRow))
            return [QuotaAccount.model_validate_json(r.account) for r in result.scalars().all()]
