"""
Generation orchestrator -- owns the lifecycle of every request.

submit() validates and reserves quota synchronously, then hands the request
to one asyncio task that drives it through asset analysis, prompt
assembly, the pre-generation safety check, admission, provider invocation
and the post-generation safety check, until it waits for review or ends.

Cancellation is cooperative: cancel() sets the request's cancel event and
cancels the in-flight sub-task (admission wait, classifier or provider
call). The driving task notices and finishes the request as cancelled,
refunding its quota. Every failure after the reservation refunds quota as
well, so a debit only sticks when content reached review.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from storyforge.assets.analysis import AssetAnalyzer
from storyforge.assets.resolver import Asset, AssetResolver
from storyforge.contracts.errors import (
    GenerationError,
    InternalError,
    InvalidStateError,
    QuotaExceeded,
    ReasonCode,
    RequestNotFound,
    SafetyRejected,
    ValidationError,
)
from storyforge.contracts.models import (
    TERMINAL_STATUSES,
    CancelResult,
    DecisionResult,
    FailureInfo,
    GenerationRecord,
    GenerationRequest,
    QuotaView,
    RequestStatus,
    ReviewDecision,
    SafetyVerdict,
    Severity,
    StatusView,
    SubmitResult,
    Usage,
)
from storyforge.logging.logger import bind_request_id
from storyforge.observability.metrics import (
    requests_finished,
    requests_in_flight,
    requests_submitted,
)
from storyforge.orchestrator.approval import ApprovalWorkflow
from storyforge.orchestrator.state_machine import CANCELLABLE, advance
from storyforge.persistence.store import GenerationStore
from storyforge.prompts.assembler import PromptAssembler
from storyforge.providers.registry import ProviderSnapshot
from storyforge.providers.router import ProviderRouter
from storyforge.quota.ledger import QuotaLedger
from storyforge.safety.pipeline import SafetyPipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[StatusView], Awaitable[None] | None]

MIN_PROMPT_LENGTH = 10
MAX_PROMPT_LENGTH = 2000
MAX_ASSETS = 10

S = RequestStatus

NON_TERMINAL = [s for s in RequestStatus if s not in TERMINAL_STATUSES]


@dataclass
class OrchestratorSettings:
    dedupe_window_seconds: float = 600.0
    max_concurrent_per_requester: int = 2
    # None derives the bound from the providers' per-minute ceilings
    max_concurrent_global: int | None = None
    global_concurrency_cap: int = 32
    reservation_cost: int = 1


class _CancelRequested(Exception):
    pass


@dataclass
class _Runtime:
    record: GenerationRecord
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    inflight: asyncio.Future | None = None
    admitted: bool = False


@dataclass
class _DedupeEntry:
    record: GenerationRecord
    created_at: float
    future: asyncio.Future


@dataclass
class _RequesterSlots:
    semaphore: asyncio.Semaphore
    # Requests holding or waiting for a slot; the entry is dropped at zero
    users: int = 0


class Orchestrator:

    def __init__(
        self,
        ledger: QuotaLedger,
        router: ProviderRouter,
        safety: SafetyPipeline,
        assembler: PromptAssembler,
        store: GenerationStore,
        assets: AssetResolver,
        analyzer: AssetAnalyzer,
        approval: ApprovalWorkflow | None = None,
        settings: OrchestratorSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ledger = ledger
        self._router = router
        self._safety = safety
        self._assembler = assembler
        self._store = store
        self._assets = assets
        self._analyzer = analyzer
        self._approval = approval or ApprovalWorkflow()
        self._settings = settings or OrchestratorSettings()
        self._clock = clock

        self._runtimes: dict[str, _Runtime] = {}
        self._dedupe: dict[str, _DedupeEntry] = {}
        self._listeners: list[Listener] = []

        global_limit = self._settings.max_concurrent_global or min(
            router.registry.total_rate_per_minute(), self._settings.global_concurrency_cap
        )
        self._global_slots = asyncio.Semaphore(max(1, global_limit))
        self._requester_slots: dict[str, _RequesterSlots] = {}

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, request: GenerationRequest) -> SubmitResult:
        """Accept a request, or return the identical one already in flight.

        Raises ValidationError for malformed requests. Quota exhaustion and
        collaborator faults are not raised; they are returned as a failed
        result (the former with the reset time).
        """
        self._prune_dedupe()
        fingerprint = request.fingerprint()
        entry = self._dedupe_lookup(fingerprint)
        if entry is not None:
            # Identical concurrent submissions share the first one's outcome
            await asyncio.shield(entry.future)
            record = entry.record
            requests_submitted.labels(outcome="deduplicated").inc()
            logger.info(
                "Request deduplicated onto %s", record.request_id,
                extra={"request_id": record.request_id},
            )
            return SubmitResult(
                request_id=record.request_id,
                status=record.status,
                failure=record.failure,
                deduplicated=True,
            )

        record = GenerationRecord(request=request, fingerprint=fingerprint)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        # Nobody may await the future; do not warn about an unretrieved error
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._dedupe[fingerprint] = _DedupeEntry(record=record, created_at=self._clock(), future=future)

        try:
            result = await self._accept(record)
        except asyncio.CancelledError:
            future.cancel()
            self._dedupe.pop(fingerprint, None)
            raise
        except BaseException as exc:
            future.set_exception(exc)
            raise
        future.set_result(result)
        return result

    def _dedupe_lookup(self, fingerprint: str) -> _DedupeEntry | None:
        entry = self._dedupe.get(fingerprint)
        if entry is None:
            return None
        if self._is_stale(entry, self._clock()):
            del self._dedupe[fingerprint]
            return None
        return entry

    def _is_stale(self, entry: _DedupeEntry, now: float) -> bool:
        if not entry.future.done():
            return False
        expired = now - entry.created_at > self._settings.dedupe_window_seconds
        return expired or entry.record.status in (S.FAILED, S.CANCELLED)

    def _prune_dedupe(self) -> None:
        now = self._clock()
        stale = [fp for fp, entry in self._dedupe.items() if self._is_stale(entry, now)]
        for fingerprint in stale:
            del self._dedupe[fingerprint]

    async def _accept(self, record: GenerationRecord) -> SubmitResult:
        runtime = _Runtime(record=record)
        self._runtimes[record.request_id] = runtime
        try:
            return await self._validate_and_reserve(runtime)
        finally:
            # Without a lifecycle task nothing else will settle the request
            if runtime.task is None:
                runtime.idle.set()

    async def _validate_and_reserve(self, runtime: _Runtime) -> SubmitResult:
        record = runtime.record
        request = record.request
        await self._store.save(record)

        try:
            await self._transition(runtime, S.VALIDATING)
            assets = await self._validate(request)
        except ValidationError as exc:
            requests_submitted.labels(outcome="invalid").inc()
            logger.info(
                "Request rejected at validation: %s", exc.message,
                extra={"request_id": record.request_id},
            )
            await self._fail(runtime, exc)
            raise
        except Exception as exc:
            # Collaborator outage (asset service, store); the request cannot be accepted
            requests_submitted.labels(outcome="error").inc()
            logger.exception(
                "Unexpected fault validating request",
                extra={"request_id": record.request_id},
            )
            await self._fail(runtime, InternalError(str(exc) or type(exc).__name__))
            return self._submit_result(record)

        if runtime.cancel_event.is_set():
            await self._finish_cancelled(runtime)
            return self._submit_result(record)

        account_id = request.requester_id
        reserved = self._ledger.try_reserve(account_id, self._settings.reservation_cost)
        if not reserved.ok:
            requests_submitted.labels(outcome="quota_exceeded").inc()
            await self._fail(
                runtime,
                QuotaExceeded(account_id, reserved.window, reserved.reset_at or reserved.account.daily_reset_at),
            )
            return self._submit_result(record)

        record.reservation = reserved.reservation
        await self._store.save_quota_account(reserved.account)
        await self._transition(runtime, S.QUOTA_RESERVED)

        requests_submitted.labels(outcome="accepted").inc()
        runtime.task = asyncio.create_task(
            self._drive(runtime, assets), name=f"generation-{record.request_id}"
        )
        return self._submit_result(record)

    async def _validate(self, request: GenerationRequest) -> list[Asset]:
        prompt = request.prompt.strip()
        if len(prompt) < MIN_PROMPT_LENGTH:
            raise ValidationError(
                f"Prompt must be at least {MIN_PROMPT_LENGTH} characters",
                field="prompt",
            )
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError(
                f"Prompt must be at most {MAX_PROMPT_LENGTH} characters",
                field="prompt",
            )
        if len(set(request.asset_ids)) > MAX_ASSETS:
            raise ValidationError(f"At most {MAX_ASSETS} assets may be referenced", field="asset_ids")
        self._assembler.check(request)
        unique_ids = tuple(dict.fromkeys(request.asset_ids))
        return await self._assets.resolve_all(unique_ids, request.requester_id)

    @staticmethod
    def _submit_result(record: GenerationRecord) -> SubmitResult:
        return SubmitResult(request_id=record.request_id, status=record.status, failure=record.failure)

    # ------------------------------------------------------------------
    # Lifecycle task
    # ------------------------------------------------------------------

    async def _drive(self, runtime: _Runtime, assets: list[Asset] | None = None) -> None:
        record = runtime.record
        bind_request_id(record.request_id)
        requests_in_flight.inc()
        try:
            if record.status == S.QUOTA_RESERVED:
                await self._prepare(runtime, assets)
            if record.status == S.GENERATING:
                await self._generate(runtime)
            if record.status == S.SAFETY_CHECKING:
                await self._check_content(runtime)
        except _CancelRequested:
            await self._finish_cancelled(runtime)
        except GenerationError as exc:
            await self._fail(runtime, exc)
        except asyncio.CancelledError:
            # Shutdown: the stored status is left for resume()
            logger.info("Lifecycle task interrupted", extra={"request_id": record.request_id})
            raise
        except Exception as exc:
            logger.exception("Unexpected fault driving request", extra={"request_id": record.request_id})
            await self._fail(runtime, InternalError(str(exc) or type(exc).__name__))
        finally:
            self._release_admission(runtime)
            requests_in_flight.dec()
            runtime.idle.set()

    async def _prepare(self, runtime: _Runtime, assets: list[Asset] | None) -> None:
        record = runtime.record
        request = record.request
        self._raise_if_cancelled(runtime)

        if assets is None:
            assets = await self._assets.resolve_all(
                tuple(dict.fromkeys(request.asset_ids)), request.requester_id
            )
        analyses = [await self._analyzer.analyze(asset) for asset in assets]
        assembled = self._assembler.assemble(request, analyses)
        record.payload = assembled.llm_request

        verdict = await self._interruptible(
            runtime, self._safety.pre_check(assembled.user_text, request.parameters)
        )
        record.prompt_concerns = list(verdict.concerns)
        if verdict.max_severity == Severity.HIGH:
            await self._reject_unsafe(runtime, verdict)
            return
        if not verdict.passed:
            record.requires_strict_review = True

        await self._interruptible(runtime, self._admit(runtime))
        self._raise_if_cancelled(runtime)
        await self._transition(runtime, S.GENERATING)

    async def _generate(self, runtime: _Runtime) -> None:
        record = runtime.record
        if record.payload is None:
            raise InternalError("Request reached generation without an assembled prompt")
        if not runtime.admitted:
            await self._interruptible(runtime, self._admit(runtime))
        self._raise_if_cancelled(runtime)

        try:
            routed = await self._interruptible(
                runtime,
                self._router.invoke(
                    record.request_id,
                    record.payload,
                    on_attempt=record.attempts.append,
                    sequence_start=len(record.attempts),
                ),
            )
        finally:
            self._release_admission(runtime)

        response = routed.response
        record.content = response.content
        record.usage = Usage(
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            total_tokens=response.total_tokens,
        )
        record.total_cost = round(sum(a.cost for a in record.attempts), 6)
        self._raise_if_cancelled(runtime)
        await self._transition(runtime, S.SAFETY_CHECKING, reason=routed.provider_id)

    async def _check_content(self, runtime: _Runtime) -> None:
        record = runtime.record
        if record.content is None:
            raise InternalError("Request reached safety checking without content")

        verdict = await self._safety.post_check(record.content, record.request.parameters)
        record.verdict = verdict
        if verdict.max_severity == Severity.HIGH:
            await self._reject_unsafe(runtime, verdict)
            return
        if not verdict.passed:
            record.requires_strict_review = True
        reason = "strict_review" if record.requires_strict_review else "passed"
        await self._transition(runtime, S.READY_FOR_REVIEW, reason=reason)

    # ------------------------------------------------------------------
    # Admission and cancellation plumbing
    # ------------------------------------------------------------------

    async def _admit(self, runtime: _Runtime) -> None:
        requester = runtime.record.request.requester_id
        slots = self._requester_slots.get(requester)
        if slots is None:
            slots = _RequesterSlots(asyncio.Semaphore(self._settings.max_concurrent_per_requester))
            self._requester_slots[requester] = slots
        slots.users += 1
        try:
            await slots.semaphore.acquire()
        except BaseException:
            self._leave_requester_slots(requester, slots)
            raise
        try:
            await self._global_slots.acquire()
        except BaseException:
            slots.semaphore.release()
            self._leave_requester_slots(requester, slots)
            raise
        runtime.admitted = True

    def _release_admission(self, runtime: _Runtime) -> None:
        if not runtime.admitted:
            return
        runtime.admitted = False
        self._global_slots.release()
        requester = runtime.record.request.requester_id
        slots = self._requester_slots[requester]
        slots.semaphore.release()
        self._leave_requester_slots(requester, slots)

    def _leave_requester_slots(self, requester: str, slots: _RequesterSlots) -> None:
        slots.users -= 1
        if slots.users == 0:
            del self._requester_slots[requester]

    async def _interruptible(self, runtime: _Runtime, coro: Coroutine[Any, Any, T]) -> T:
        """Run a suspension point as a sub-task that cancel() can interrupt."""
        if runtime.cancel_event.is_set():
            coro.close()
            raise _CancelRequested()
        task = asyncio.ensure_future(coro)
        runtime.inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if runtime.cancel_event.is_set() and not (current and current.cancelling()):
                raise _CancelRequested() from None
            raise
        finally:
            runtime.inflight = None

    @staticmethod
    def _raise_if_cancelled(runtime: _Runtime) -> None:
        if runtime.cancel_event.is_set():
            raise _CancelRequested()

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    async def _fail(self, runtime: _Runtime, error: GenerationError) -> None:
        record = runtime.record
        record.failure = FailureInfo.from_error(error)
        await self._refund(record)
        await self._transition(runtime, S.FAILED, reason=error.code.value)

    async def _reject_unsafe(self, runtime: _Runtime, verdict: SafetyVerdict) -> None:
        record = runtime.record
        record.failure = FailureInfo.from_error(SafetyRejected(verdict.stage, verdict.categories))
        await self._refund(record)
        logger.warning(
            "Request rejected by %s-generation safety check", verdict.stage,
            extra={"request_id": record.request_id, "_extra": {
                "concerns": [c.model_dump(mode="json") for c in verdict.concerns],
            }},
        )
        await self._transition(runtime, S.REJECTED, reason=ReasonCode.SAFETY_REJECTED.value)

    async def _finish_cancelled(self, runtime: _Runtime) -> None:
        record = runtime.record
        record.failure = FailureInfo(reason=ReasonCode.CANCELLED, message="Cancelled by requester")
        await self._refund(record)
        await self._transition(runtime, S.CANCELLED, reason=ReasonCode.CANCELLED.value)

    async def _refund(self, record: GenerationRecord) -> None:
        reservation = record.reservation
        if reservation is None or reservation.released:
            return
        account = self._ledger.release(reservation)
        await self._store.save_quota_account(account)
        logger.info(
            "Refunded %d quota unit(s) to %s", reservation.cost, reservation.account_id,
            extra={"request_id": record.request_id},
        )

    async def _transition(self, runtime: _Runtime, to_status: RequestStatus, reason: str = "") -> None:
        record = runtime.record
        transition = advance(record, to_status, reason)
        logger.info(
            "Request %s -> %s", transition.from_status.value, to_status.value,
            extra={"request_id": record.request_id, "_extra": {"reason": reason or None}},
        )
        if to_status.is_terminal:
            failure_reason = record.failure.reason.value if record.failure else ""
            requests_finished.labels(status=to_status.value, reason=failure_reason).inc()
            self._runtimes.pop(record.request_id, None)
        await self._store.save(record)
        await self._notify(record)

    # ------------------------------------------------------------------
    # Queries and commands on existing requests
    # ------------------------------------------------------------------

    async def _load(self, request_id: str) -> GenerationRecord:
        runtime = self._runtimes.get(request_id)
        if runtime is not None:
            return runtime.record
        record = await self._store.get(request_id)
        if record is None:
            raise RequestNotFound(request_id)
        return record

    async def get_status(self, request_id: str) -> StatusView:
        return StatusView.from_record(await self._load(request_id))

    async def cancel(self, request_id: str) -> CancelResult:
        runtime = self._runtimes.get(request_id)
        if runtime is None:
            record = await self._load(request_id)
            return CancelResult(request_id=request_id, status=record.status, cancelled=False)

        record = runtime.record
        if record.status not in CANCELLABLE:
            return CancelResult(request_id=request_id, status=record.status, cancelled=False)

        runtime.cancel_event.set()
        if runtime.inflight is not None:
            runtime.inflight.cancel()
        await runtime.idle.wait()
        cancelled = record.status == S.CANCELLED
        if cancelled:
            logger.info("Request cancelled", extra={"request_id": request_id})
        return CancelResult(request_id=request_id, status=record.status, cancelled=cancelled)

    async def decide(self, request_id: str, decision: ReviewDecision) -> DecisionResult:
        runtime = self._runtimes.get(request_id)
        if runtime is None:
            record = await self._load(request_id)
            raise InvalidStateError(request_id, record.status.value, "decide")

        async with runtime.lock:
            record = runtime.record
            if record.status != S.READY_FOR_REVIEW:
                raise InvalidStateError(request_id, record.status.value, "decide")
            outcome = self._approval.evaluate(record, decision)
            record.decision = decision
            record.artifact = outcome.artifact
            record.failure = outcome.failure
            await self._transition(runtime, outcome.status, reason=decision.action.value)

        logger.info(
            "Review decision %s by %s", decision.action.value, decision.reviewer_id,
            extra={"request_id": request_id},
        )
        return DecisionResult(request_id=request_id, status=record.status, artifact=record.artifact)

    def pending_reviews(self) -> list[StatusView]:
        records = [rt.record for rt in self._runtimes.values()]
        return [StatusView.from_record(r) for r in self._approval.pending(records)]

    def get_quota(self, account_id: str) -> QuotaView:
        return self._ledger.view(account_id)

    async def update_account(
        self,
        account_id: str,
        tier: str,
        bonus_credits: int = 0,
        bonus_expires_at: datetime | None = None,
    ) -> QuotaView:
        account = self._ledger.open_account(account_id, tier, bonus_credits, bonus_expires_at)
        await self._store.save_quota_account(account)
        logger.info("Account %s set to tier %s", account_id, tier)
        return self._ledger.view(account_id)

    def providers(self) -> list[ProviderSnapshot]:
        return self._router.registry.snapshot()

    async def run_health_checks(self) -> list[ProviderSnapshot]:
        await self._router.run_health_checks()
        return self.providers()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a status-change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _notify(self, record: GenerationRecord) -> None:
        if not self._listeners:
            return
        view = StatusView.from_record(record)
        for listener in list(self._listeners):
            try:
                result = listener(view)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Status listener failed", extra={"request_id": record.request_id})

    # ------------------------------------------------------------------
    # Restart and shutdown
    # ------------------------------------------------------------------

    async def resume(self) -> int:
        """Reload unfinished requests from the store and drive them on.

        Returns the number of requests picked up.
        """
        records = await self._store.list_by_status(NON_TERMINAL)
        resumed = 0
        for record in records:
            if record.request_id in self._runtimes:
                continue
            runtime = _Runtime(record=record)
            self._runtimes[record.request_id] = runtime
            self._dedupe.setdefault(record.fingerprint, self._settled_entry(record))
            resumed += 1

            if record.status in (S.PENDING, S.VALIDATING):
                await self._fail(runtime, InternalError("Interrupted before the request was accepted"))
                runtime.idle.set()
            elif record.status == S.READY_FOR_REVIEW:
                runtime.idle.set()
            else:
                logger.info(
                    "Resuming request from %s", record.status.value,
                    extra={"request_id": record.request_id},
                )
                runtime.task = asyncio.create_task(
                    self._drive(runtime), name=f"generation-{record.request_id}"
                )
        if resumed:
            logger.info("Resumed %d unfinished request(s)", resumed)
        return resumed

    def _settled_entry(self, record: GenerationRecord) -> _DedupeEntry:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return _DedupeEntry(record=record, created_at=self._clock(), future=future)

    async def wait_idle(self, request_id: str) -> None:
        """Wait until the request's lifecycle task has nothing left to do."""
        runtime = self._runtimes.get(request_id)
        if runtime is not None:
            await runtime.idle.wait()

    async def close(self) -> None:
        tasks = [rt.task for rt in self._runtimes.values() if rt.task and not rt.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._router.close()
        await self._safety.close()
