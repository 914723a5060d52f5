"""Per-record consult pipeline and per-credential worker.

This module implements the processing of one credential's sub-batch.  Each
record is threaded through the following stages:

1. **Validate** — records missing a document, sex, birth date or name are
   skipped without any provider call (``invalid-data``).
2. **Create consult** — 2xx captures the consult id; 400 means a consult is
   already in progress and the pipeline still looks up its result; any other
   status or a transport failure ends the record (``api-error``).
3. **Authorize** — only when a consult id was captured.  A failure is
   counted as an authorization error but does **not** end the record.
4. **Fetch result** — today's (UTC) results for the record's document.
   A failed lookup ends the record (``api-error``); no results ends it
   as ``empty-result``.
5. **Normalise** — first result item, falling back to the second for any
   missing field.  A document that does not normalise ends the record as
   ``invalid-payload``.
6. **Update store** — coalesce-merge keyed by the canonical document
   (``ok`` / ``no-rows-affected``, or ``store-error`` on failure).

The same inter-call delay is awaited before the authorize call and before the
result lookup.

Failure isolation
-----------------
:func:`process_record` never raises for provider or store failures: they are
counted, reported to the :class:`~marginbot.orchestrator.metrics.StatusTracker`
and turned into a terminal :class:`RecordOutcome`.  :func:`run_credential`
catches anything unexpected so one credential's failure never reaches its
siblings; the credential is then marked failed and counts one store error.

Typical usage::

    summary = await run_credential(
        credential,
        sub_batch,
        position=1,
        total_credentials=3,
        provider=provider,
        clients=clients,
        gate=gate,
        tracker=tracker,
        call_delay_s=3.0,
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import StrEnum
from typing import Any, Final

from marginbot.core.ids import normalize_document
from marginbot.core.logging_config import CREDENTIAL_CTX
from marginbot.core.models import ClientRecord, Credential, ResultPayload
from marginbot.orchestrator.metrics import StatusTracker, format_duration
from marginbot.orchestrator.rate_window import RateWindowGate
from marginbot.providers.base import (
    BaseConsultProvider,
    merge_result_items,
    result_items_from_body,
)
from marginbot.providers.normalizers import (
    clean_description,
    map_status,
    parse_margin_value,
)
from marginbot.storage.repository import ClientRepository

__all__ = [
    "ROUTE_CREATE_CONSULT",
    "ROUTE_AUTHORIZE",
    "ROUTE_FETCH_RESULT",
    "ROUTE_STORE_UPDATE",
    "ROUTE_CREDENTIAL_BATCH",
    "RecordOutcome",
    "SummaryCounters",
    "CredentialSummary",
    "CycleSummary",
    "AlreadyRunning",
    "build_result_payload",
    "process_record",
    "run_credential",
]

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[object]]

# ---------------------------------------------------------------------------
# Error routes reported to the status tracker
# ---------------------------------------------------------------------------

ROUTE_CREATE_CONSULT: Final[str] = "POST /private-consignment/consult"
ROUTE_AUTHORIZE: Final[str] = "POST /private-consignment/consult/{id}/authorize"
ROUTE_FETCH_RESULT: Final[str] = "GET /private-consignment/consult"
ROUTE_STORE_UPDATE: Final[str] = "store:update_by_document"
ROUTE_CREDENTIAL_BATCH: Final[str] = "job:credential_batch"

#: Status reported for failures that produced no HTTP status.
_NO_RESPONSE_STATUS: Final[int] = 500

#: Minimum percentage step between two progress log lines.
_PROGRESS_STEP_PCT: Final[int] = 5
_PROGRESS_BAR_WIDTH: Final[int] = 22


class RecordOutcome(StrEnum):
    """Terminal reason code of one record."""

    INVALID_DATA = "invalid-data"
    API_ERROR = "api-error"
    EMPTY_RESULT = "empty-result"
    INVALID_PAYLOAD = "invalid-payload"
    STORE_ERROR = "store-error"
    OK = "ok"
    NO_ROWS_AFFECTED = "no-rows-affected"


# ---------------------------------------------------------------------------
# Summary data classes
# ---------------------------------------------------------------------------


@dataclass
class SummaryCounters:
    """Counters shared by credential and cycle summaries.

    Terminal buckets (exactly one per record): ``skipped_invalid``,
    ``api_errors``, ``results_empty``, ``store_errors``, ``results_found``.
    ``consults_created``, ``consults_active_400`` and
    ``authorization_errors`` count pipeline stages and overlap them.

    Attributes:
        records_selected: Records assigned.
        records_processed: Records that passed validation.
        skipped_invalid: Records skipped for missing fields.
        consults_created: Create-consult calls answered with 2xx.
        consults_active_400: Create-consult calls answered with 400.
        authorization_errors: Failed authorize calls.
        results_found: Records whose result reached the store update.
        results_empty: Lookups with no usable result.
        rows_updated: Store rows affected.
        api_errors: Records ended by a failed provider call.
        store_errors: Store failures (plus one per failed credential).
    """

    records_selected: int = 0
    records_processed: int = 0
    skipped_invalid: int = 0
    consults_created: int = 0
    consults_active_400: int = 0
    authorization_errors: int = 0
    results_found: int = 0
    results_empty: int = 0
    rows_updated: int = 0
    api_errors: int = 0
    store_errors: int = 0

    @property
    def total_errors(self) -> int:
        """API, authorization and store errors combined."""
        return self.api_errors + self.authorization_errors + self.store_errors

    def merge(self, other: SummaryCounters) -> None:
        """Add every counter of *other* into this summary."""
        for f in fields(SummaryCounters):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def counters(self) -> dict[str, int]:
        """Return the counters as a plain dict."""
        return {f.name: getattr(self, f.name) for f in fields(SummaryCounters)}


@dataclass
class CredentialSummary(SummaryCounters):
    """Counters for one credential's sub-batch in one cycle.

    Attributes:
        position: 1-based position of the credential in the cycle.
        credential_id: Store id of the credential.
        tenant: Tenant of the credential.
        ok: ``False`` when the worker hit an unexpected failure.
        message: Failure message when ``ok`` is ``False``.
        duration_s: Wall time of the worker, including the window wait.
        outcomes: Count of terminal :class:`RecordOutcome` codes.
    """

    position: int = 0
    credential_id: int | None = None
    tenant: str | None = None
    ok: bool = True
    message: str | None = None
    duration_s: float = 0.0
    outcomes: Counter[str] = field(default_factory=Counter)

    def summary_line(self, total_credentials: int) -> str:
        """One-line human-readable summary, as logged when the worker ends."""
        return (
            f"Finished credential {self.position}/{total_credentials} / "
            f"records {self.records_selected} (created={self.consults_created}, "
            f"active-400={self.consults_active_400}, errors={self.total_errors}) "
            f"| 100% | total time {format_duration(self.duration_s)}"
        )


@dataclass
class CycleSummary(SummaryCounters):
    """Outcome of one orchestration cycle.

    Built while the cycle runs and handed out once finished; never mutated
    afterwards.

    Attributes:
        ok: ``False`` when the cycle ended early or any credential failed.
        message: Explanation when ``ok`` is ``False``.
        source: Trigger label (``"manual"``, ``"startup"``, ``"scheduler"``).
        started_at: Cycle start (UTC).
        finished_at: Cycle end (UTC).
        duration_s: Wall time of the cycle.
        credentials_available: Active credentials found.
        credentials_processed: Credential workers that returned a summary.
        credential_summaries: One :class:`CredentialSummary` per credential.
    """

    ok: bool = True
    message: str | None = None
    source: str = "manual"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_s: float = 0.0
    credentials_available: int = 0
    credentials_processed: int = 0
    credential_summaries: list[CredentialSummary] = field(default_factory=list)

    @property
    def failed_positions(self) -> list[int]:
        """Positions of credentials whose worker failed."""
        return [s.position for s in self.credential_summaries if not s.ok]

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable snapshot of the cycle."""
        total = self.credentials_available
        credentials = [
            {
                "position": s.position,
                "total": total,
                "credential_id": s.credential_id,
                "tenant": s.tenant,
                "ok": s.ok,
                "message": s.message,
                **s.counters(),
                "total_errors": s.total_errors,
                "outcomes": dict(s.outcomes),
                "duration_s": round(s.duration_s, 3),
                "duration_hhmmss": format_duration(s.duration_s),
                "summary": s.summary_line(total),
            }
            for s in self.credential_summaries
        ]
        return {
            "updated_at": self.finished_at.isoformat() if self.finished_at else None,
            "last_cycle": {
                "ok": self.ok,
                "source": self.source,
                "message": self.message,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "duration_s": round(self.duration_s, 3),
                "duration_hhmmss": format_duration(self.duration_s),
                "credentials_available": self.credentials_available,
                "credentials_processed": self.credentials_processed,
                **self.counters(),
                "total_errors": self.total_errors,
            },
            "credentials": credentials,
            "summary_lines": [c["summary"] for c in credentials],
        }

    def format_cycle_report(self) -> str:
        """Return a multi-line cycle report for a single ``logger.info()`` call.

        Example output::

            cycle finished (scheduler) ok — credentials 3/3, records 480/500,
              created=410 active-400=70 auth_errors=2 found=455 empty=25
              rows=455 api_errors=0 store_errors=0 — total time 00:41:07
              Finished credential 1/3 / records 167 (created=140, ...) | 100% | ...
        """
        state = "ok" if self.ok else f"FAILED: {self.message or 'unknown error'}"
        lines = [
            f"cycle finished ({self.source}) {state} — "
            f"credentials {self.credentials_processed}/{self.credentials_available}, "
            f"records {self.records_processed}/{self.records_selected}",
            f"  created={self.consults_created} active-400={self.consults_active_400} "
            f"auth_errors={self.authorization_errors} found={self.results_found} "
            f"empty={self.results_empty} skipped={self.skipped_invalid} "
            f"rows={self.rows_updated} api_errors={self.api_errors} "
            f"store_errors={self.store_errors} — total time {format_duration(self.duration_s)}",
        ]
        lines.extend(
            f"  {s.summary_line(self.credentials_available)}"
            for s in self.credential_summaries
        )
        return "\n".join(lines)


@dataclass(frozen=True)
class AlreadyRunning:
    """Returned by a cycle trigger while another cycle is still running."""

    message: str = "A cycle is already running."
    already_running: bool = True
    ok: bool = False


# ---------------------------------------------------------------------------
# Per-record processing
# ---------------------------------------------------------------------------


def _fail_api(
    summary: CredentialSummary,
    tracker: StatusTracker | None,
    route: str,
    status: int,
    message: str,
) -> RecordOutcome:
    summary.api_errors += 1
    if tracker is not None:
        tracker.record_api_error(route, status, message)
    return RecordOutcome.API_ERROR


def build_result_payload(body: Any, tenant: str | None) -> ResultPayload | None:
    """Extract the store update from a result-lookup body.

    Returns:
        The payload, or ``None`` when no field is present or the document
        does not normalise.
    """
    merged = merge_result_items(result_items_from_body(body))
    if merged.is_empty:
        return None
    document11 = normalize_document(merged.document_number)
    if document11 is None:
        return None
    return ResultPayload(
        document11=document11,
        available_margin=parse_margin_value(merged.available_margin_value),
        status=map_status(merged.status),
        description=clean_description(merged.description),
        credential_tenant=tenant.strip() if tenant and tenant.strip() else None,
    )


def _has_results(body: Any) -> bool:
    return isinstance(body, dict) and isinstance(body.get("data"), list) and bool(body["data"])


async def process_record(
    record: ClientRecord,
    credential: Credential,
    provider: BaseConsultProvider,
    clients: ClientRepository,
    summary: CredentialSummary,
    *,
    tracker: StatusTracker | None = None,
    call_delay_s: float = 0.0,
    sleep: SleepFn = asyncio.sleep,
) -> RecordOutcome:
    """Run one record through validate → create → authorize → fetch → update.

    Provider and store failures never propagate: they are counted in
    *summary*, reported to *tracker* and returned as the terminal outcome.

    Args:
        record: Pending client record.
        credential: Credential whose token authenticates every call.
        provider: Consult provider (already inside its async context).
        clients: Repository used for the result write-back.
        summary: Mutable counter bag updated in-place.
        tracker: Optional status tracker receiving error events.
        call_delay_s: Delay awaited before the authorize and fetch calls.
        sleep: Coroutine function used for the delays.

    Returns:
        The terminal :class:`RecordOutcome`; also counted in
        ``summary.outcomes``.
    """
    outcome = await _process_record(
        record,
        credential,
        provider,
        clients,
        summary,
        tracker=tracker,
        call_delay_s=call_delay_s,
        sleep=sleep,
    )
    summary.outcomes[outcome] += 1
    logger.debug("Record id=%s → %s", record.id, outcome)
    return outcome


async def _process_record(
    record: ClientRecord,
    credential: Credential,
    provider: BaseConsultProvider,
    clients: ClientRepository,
    summary: CredentialSummary,
    *,
    tracker: StatusTracker | None,
    call_delay_s: float,
    sleep: SleepFn,
) -> RecordOutcome:
    # ------------------------------------------------------------------
    # Stage 1 — Validate
    # ------------------------------------------------------------------
    document11 = record.document11
    if not record.has_required_fields or document11 is None:
        summary.skipped_invalid += 1
        return RecordOutcome.INVALID_DATA

    summary.records_processed += 1

    # ------------------------------------------------------------------
    # Stage 2 — Create consult
    # ------------------------------------------------------------------
    try:
        created = await provider.create_consult(credential, record)
    except Exception as exc:  # noqa: BLE001
        logger.error("Create consult failed for record id=%s: %s", record.id, exc)
        return _fail_api(summary, tracker, ROUTE_CREATE_CONSULT, _NO_RESPONSE_STATUS, str(exc))

    consult_id: str | None = None
    if created.is_success:
        summary.consults_created += 1
        consult_id = created.consult_id
    elif created.status == 400:
        summary.consults_active_400 += 1
        logger.debug("Record id=%s already has an active consult (400)", record.id)
    else:
        logger.warning("Create consult for record id=%s returned %d", record.id, created.status)
        return _fail_api(
            summary,
            tracker,
            ROUTE_CREATE_CONSULT,
            created.status,
            f"create consult returned status {created.status}",
        )

    if call_delay_s > 0:
        await sleep(call_delay_s)

    # ------------------------------------------------------------------
    # Stage 3 — Authorize (not terminal)
    # ------------------------------------------------------------------
    if consult_id is not None:
        try:
            authorized = await provider.authorize(credential, consult_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Authorize failed for record id=%s consult=%s: %s", record.id, consult_id, exc
            )
            summary.authorization_errors += 1
            if tracker is not None:
                tracker.record_api_error(ROUTE_AUTHORIZE, _NO_RESPONSE_STATUS, str(exc))
        else:
            if not authorized.is_success:
                logger.warning(
                    "Authorize for record id=%s consult=%s returned %d",
                    record.id,
                    consult_id,
                    authorized.status,
                )
                summary.authorization_errors += 1
                if tracker is not None:
                    tracker.record_api_error(
                        ROUTE_AUTHORIZE,
                        authorized.status,
                        f"authorize returned status {authorized.status}",
                    )

    if call_delay_s > 0:
        await sleep(call_delay_s)

    # ------------------------------------------------------------------
    # Stage 4 — Fetch result
    # ------------------------------------------------------------------
    try:
        result = await provider.fetch_result(credential, document11)
    except Exception as exc:  # noqa: BLE001
        logger.error("Result lookup failed for record id=%s: %s", record.id, exc)
        return _fail_api(summary, tracker, ROUTE_FETCH_RESULT, _NO_RESPONSE_STATUS, str(exc))

    if not result.is_success:
        logger.warning("Result lookup for record id=%s returned %d", record.id, result.status)
        return _fail_api(
            summary,
            tracker,
            ROUTE_FETCH_RESULT,
            result.status,
            f"result lookup returned status {result.status}",
        )

    if not _has_results(result.body):
        summary.results_empty += 1
        return RecordOutcome.EMPTY_RESULT

    # ------------------------------------------------------------------
    # Stage 5 — Normalise
    # ------------------------------------------------------------------
    payload = build_result_payload(result.body, credential.tenant)
    if payload is None:
        logger.warning("Result for record id=%s has no usable document number", record.id)
        summary.results_empty += 1
        return RecordOutcome.INVALID_PAYLOAD

    # ------------------------------------------------------------------
    # Stage 6 — Update store
    # ------------------------------------------------------------------
    try:
        rows = await clients.update_by_document(payload)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "Store update failed for record id=%s (%s): %s",
            record.id,
            payload.document11,
            exc,
            exc_info=True,
        )
        summary.store_errors += 1
        if tracker is not None:
            tracker.record_store_error(ROUTE_STORE_UPDATE, _NO_RESPONSE_STATUS, str(exc))
        return RecordOutcome.STORE_ERROR

    summary.results_found += 1
    summary.rows_updated += rows
    return RecordOutcome.OK if rows > 0 else RecordOutcome.NO_ROWS_AFFECTED


# ---------------------------------------------------------------------------
# Progress logging
# ---------------------------------------------------------------------------


class _ProgressLog:
    """Logs ``current/total`` with a bar and ETA every ≥5 percentage points."""

    def __init__(self, label: str, total: int, clock: Callable[[], float]) -> None:
        self._label = label
        self._total = total
        self._clock = clock
        self._started = clock()
        self._last_pct = -1

    def _percent(self, current: int) -> int:
        total = self._total if self._total > 0 else 1
        return round(min(max(current, 0), total) / total * 100)

    def _bar(self, current: int) -> str:
        if self._total <= 0:
            return f"[{'-' * _PROGRESS_BAR_WIDTH}] 0/0 (100%)"
        clamped = min(max(current, 0), self._total)
        filled = round(clamped / self._total * _PROGRESS_BAR_WIDTH)
        bar = "#" * filled + "-" * (_PROGRESS_BAR_WIDTH - filled)
        return f"[{bar}] {clamped}/{self._total} ({self._percent(current)}%)"

    def _eta(self, current: int) -> str:
        if self._total <= 0 or current >= self._total:
            return format_duration(0)
        if current <= 0:
            return "--:--:--"
        elapsed = max(0.0, self._clock() - self._started)
        return format_duration(elapsed / current * (self._total - current))

    def update(self, current: int) -> None:
        pct = self._percent(current)
        if self._total <= 0:
            should_log = current == 0
        elif current in (0, self._total) or self._last_pct < 0:
            should_log = True
        else:
            should_log = pct - self._last_pct >= _PROGRESS_STEP_PCT
        if not should_log:
            return
        self._last_pct = pct
        logger.info(
            "%s | record %d/%d - %d%% %s | ETA %s",
            self._label,
            current,
            self._total,
            pct,
            self._bar(current),
            self._eta(current),
        )


# ---------------------------------------------------------------------------
# Per-credential worker
# ---------------------------------------------------------------------------


async def run_credential(
    credential: Credential,
    records: Sequence[ClientRecord],
    *,
    position: int,
    total_credentials: int,
    provider: BaseConsultProvider,
    clients: ClientRepository,
    gate: RateWindowGate,
    tracker: StatusTracker | None = None,
    call_delay_s: float = 0.0,
    record_delay_s: float = 0.0,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> CredentialSummary:
    """Wait for the credential's rate window, then process its sub-batch.

    Records are processed strictly in order, *record_delay_s* apart.  Any
    unexpected exception marks the summary failed (one store error) instead
    of propagating.

    Args:
        credential: The credential this worker serves.
        records: Sub-batch assigned by
            :func:`~marginbot.orchestrator.distributor.split_batch`.
        position: 1-based position of the credential in the cycle.
        total_credentials: Number of credentials in the cycle.
        provider: Consult provider shared by all workers.
        clients: Client repository shared by all workers.
        gate: The orchestrator's rate-window gate.
        tracker: Optional status tracker.
        call_delay_s: Delay before each follow-up provider call.
        record_delay_s: Delay between two records.
        sleep: Coroutine function used for the delays.
        clock: Monotonic clock for durations and ETA.

    Returns:
        The credential's :class:`CredentialSummary`.
    """
    label = f"{position}/{total_credentials}"
    ctx_token = CREDENTIAL_CTX.set(label)
    started = clock()
    summary = CredentialSummary(
        position=position,
        credential_id=credential.id,
        tenant=credential.tenant_label,
    )

    try:
        logger.info("Credential %s (id=%s tenant=%s)", label, credential.id, credential.tenant_label)
        if tracker is not None:
            tracker.increment_window()

        try:
            await gate.acquire(credential.rate_key)
            summary.records_selected = len(records)
            logger.info("Credential %s | %d record(s) assigned", label, len(records))

            progress = _ProgressLog(f"Credential {label}", len(records), clock)
            progress.update(0)
            for index, record in enumerate(records, start=1):
                outcome = await process_record(
                    record,
                    credential,
                    provider,
                    clients,
                    summary,
                    tracker=tracker,
                    call_delay_s=call_delay_s,
                    sleep=sleep,
                )
                progress.update(index)
                if (
                    record_delay_s > 0
                    and outcome is not RecordOutcome.INVALID_DATA
                    and index < len(records)
                ):
                    await sleep(record_delay_s)
        except Exception as exc:  # noqa: BLE001
            summary.ok = False
            summary.message = str(exc) or type(exc).__name__
            summary.store_errors += 1
            if tracker is not None:
                tracker.record_store_error(
                    ROUTE_CREDENTIAL_BATCH, _NO_RESPONSE_STATUS, summary.message
                )
            logger.error(
                "Credential %s failed while processing its batch: %s",
                label,
                exc,
                exc_info=True,
            )

        summary.duration_s = clock() - started
        logger.info("%s", summary.summary_line(total_credentials))
        return summary
    finally:
        CREDENTIAL_CTX.reset(ctx_token)
