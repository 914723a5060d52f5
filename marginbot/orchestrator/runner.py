"""Cycle orchestrator: single-flight cycles over all active credentials.

:class:`CycleOrchestrator` owns the state that must outlive a single cycle:

* the **single-flight flag** — a second trigger while a cycle runs returns
  :class:`~marginbot.orchestrator.pipeline.AlreadyRunning` and does nothing;
* the **rate-window gate** shared by every credential worker;
* the **last cycle summary**, superseded wholesale by the next cycle.

One cycle
---------
1. Prune elapsed rate windows.
2. Fetch the active credentials.  None → the cycle ends as a non-fatal
   failure ("No active credentials found.").
3. Compute the per-credential cap (``min(configured, 250)``) and fetch up to
   ``credentials × cap`` pending records.
4. Split the records round-robin over the credentials.
5. Run one :func:`~marginbot.orchestrator.pipeline.run_credential` worker per
   credential concurrently via ``asyncio.gather(..., return_exceptions=True)``.
6. Merge every credential summary into the cycle summary.

A store failure while fetching credentials or records ends the cycle with
``ok=False`` and one store error.  The cycle always produces a complete
summary.

Component wiring
----------------
:func:`open_orchestrator` opens the database, builds the repositories, the
consult provider and the status tracker, and tears them down on exit via
:class:`contextlib.AsyncExitStack`.

Typical usage::

    import asyncio
    from marginbot.core.settings import Settings
    from marginbot.orchestrator.runner import open_orchestrator

    async def main() -> None:
        async with open_orchestrator(Settings()) as orchestrator:
            summary = await orchestrator.run_cycle("manual")

    asyncio.run(main())
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Final

from marginbot.core.exceptions import StorageError
from marginbot.core.logging_config import CYCLE_ID_CTX
from marginbot.core.models import ClientRecord, Credential
from marginbot.core.settings import Settings
from marginbot.orchestrator.distributor import effective_cap, split_batch
from marginbot.orchestrator.metrics import StatusTracker
from marginbot.orchestrator.pipeline import (
    AlreadyRunning,
    CredentialSummary,
    CycleSummary,
    run_credential,
)
from marginbot.orchestrator.rate_window import RateWindowGate
from marginbot.providers.api.consult import ConsultProvider
from marginbot.providers.base import BaseConsultProvider
from marginbot.storage.database import open_db
from marginbot.storage.repository import ClientRepository, CredentialRepository

__all__ = [
    "ROUTE_FETCH_CREDENTIALS",
    "ROUTE_FETCH_BATCH",
    "ROUTE_CYCLE",
    "NO_CREDENTIALS_MESSAGE",
    "CycleOrchestrator",
    "open_orchestrator",
]

logger = logging.getLogger(__name__)

ROUTE_FETCH_CREDENTIALS: Final[str] = "store:fetch_active_credentials"
ROUTE_FETCH_BATCH: Final[str] = "store:fetch_pending_batch"
ROUTE_CYCLE: Final[str] = "job:cycle"

NO_CREDENTIALS_MESSAGE: Final[str] = "No active credentials found."


class CycleOrchestrator:
    """Runs consult cycles and exposes their results for inspection.

    Args:
        settings: Application settings (pacing delays, per-credential cap).
        clients: Client repository.
        credentials: Credential repository.
        provider: Consult provider, already inside its async context.
        tracker: Status tracker; a fresh one is created when omitted.
        gate: Rate-window gate; a fresh one-hour gate is created when
            omitted.
        sleep: Coroutine function used for the pacing delays.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        clients: ClientRepository,
        credentials: CredentialRepository,
        provider: BaseConsultProvider,
        tracker: StatusTracker | None = None,
        gate: RateWindowGate | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._credentials = credentials
        self._provider = provider
        self._tracker = tracker if tracker is not None else StatusTracker()
        self._gate = gate if gate is not None else RateWindowGate()
        self._sleep = sleep
        self._running = False
        self._last_summary: CycleSummary | None = None

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_summary(self) -> CycleSummary | None:
        """Summary of the last finished cycle, or ``None`` before the first."""
        return self._last_summary

    @property
    def tracker(self) -> StatusTracker:
        return self._tracker

    @property
    def gate(self) -> RateWindowGate:
        return self._gate

    def get_status_snapshot(self) -> dict[str, Any] | None:
        """JSON snapshot of the last finished cycle, or ``None``."""
        if self._last_summary is None:
            return None
        return self._last_summary.as_dict()

    def get_live_status(self) -> dict[str, Any]:
        """Tracker status combined with the last cycle snapshot."""
        return {
            **self._tracker.status(),
            "is_running": self._running,
            "last_run": self.get_status_snapshot(),
        }

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, source: str = "manual") -> CycleSummary | AlreadyRunning:
        """Run one full cycle, unless one is already running.

        Args:
            source: Trigger label recorded in the summary and the tracker.

        Returns:
            The finished :class:`CycleSummary`, or :class:`AlreadyRunning`
            when another cycle is in progress (nothing is changed then).
        """
        # No await between the check and the set: asyncio cannot interleave.
        if self._running:
            logger.warning("Cycle trigger from %r ignored — a cycle is already running.", source)
            return AlreadyRunning()
        self._running = True

        cycle_token = CYCLE_ID_CTX.set(uuid.uuid4().hex[:8])
        t0 = time.monotonic()
        summary = CycleSummary(source=source, started_at=datetime.now(UTC))
        self._tracker.start_cycle(source)
        logger.info("Cycle starting (source=%s)", source)

        try:
            try:
                await self._execute(summary)
            except Exception as exc:  # noqa: BLE001
                summary.ok = False
                summary.message = str(exc) or type(exc).__name__
                if summary.store_errors == 0:
                    summary.store_errors += 1
                    self._tracker.record_store_error(ROUTE_CYCLE, None, summary.message)
                logger.error("Cycle failed: %s", exc, exc_info=True)

            summary.finished_at = datetime.now(UTC)
            summary.duration_s = time.monotonic() - t0
            logger.info("%s", summary.format_cycle_report())
            return summary
        finally:
            self._tracker.complete_cycle()
            self._last_summary = summary
            self._running = False
            CYCLE_ID_CTX.reset(cycle_token)

    async def _execute(self, summary: CycleSummary) -> None:
        self._gate.prune()

        credentials = await self._load_credentials(summary)
        if credentials is None:
            return
        if not credentials:
            summary.ok = False
            summary.message = NO_CREDENTIALS_MESSAGE
            logger.warning(NO_CREDENTIALS_MESSAGE)
            return

        summary.credentials_available = len(credentials)
        cap = effective_cap(self._settings.max_records_per_credential)
        logger.info("%d active credential(s) found (cap %d per credential)", len(credentials), cap)

        records = await self._load_batch(summary, len(credentials) * cap)
        if records is None:
            return

        batches = split_batch(records, len(credentials), cap)
        logger.info(
            "%d record(s) selected for %d credential(s), at most %d each",
            sum(len(b) for b in batches),
            len(credentials),
            cap,
        )

        total = len(credentials)
        results = await asyncio.gather(
            *(
                run_credential(
                    credential,
                    batch,
                    position=position,
                    total_credentials=total,
                    provider=self._provider,
                    clients=self._clients,
                    gate=self._gate,
                    tracker=self._tracker,
                    call_delay_s=self._settings.wait_between_calls_s,
                    record_delay_s=self._settings.wait_between_records_s,
                    sleep=self._sleep,
                )
                for position, (credential, batch) in enumerate(
                    zip(credentials, batches, strict=True), start=1
                )
            ),
            return_exceptions=True,
        )

        for position, (credential, batch, result) in enumerate(
            zip(credentials, batches, results, strict=True), start=1
        ):
            if isinstance(result, BaseException):
                # run_credential isolates Exception; this is a cancellation or worse.
                logger.error(
                    "Credential %d/%d: worker raised unexpectedly: %r",
                    position,
                    total,
                    result,
                    exc_info=result,
                )
                result = CredentialSummary(
                    position=position,
                    credential_id=credential.id,
                    tenant=credential.tenant_label,
                    ok=False,
                    message=str(result) or type(result).__name__,
                    records_selected=len(batch),
                    store_errors=1,
                )
            summary.credentials_processed += 1
            summary.credential_summaries.append(result)
            summary.merge(result)

        failed = summary.failed_positions
        if failed:
            summary.ok = False
            summary.message = (
                f"Failed on {len(failed)} credential(s): {', '.join(str(p) for p in failed)}"
            )

    async def _load_credentials(self, summary: CycleSummary) -> list[Credential] | None:
        try:
            return await self._credentials.fetch_active()
        except StorageError as exc:
            self._fail_store(summary, ROUTE_FETCH_CREDENTIALS, exc)
            return None

    async def _load_batch(self, summary: CycleSummary, limit: int) -> list[ClientRecord] | None:
        try:
            return await self._clients.fetch_pending_batch(limit)
        except StorageError as exc:
            self._fail_store(summary, ROUTE_FETCH_BATCH, exc)
            return None

    def _fail_store(self, summary: CycleSummary, route: str, exc: StorageError) -> None:
        summary.ok = False
        summary.message = str(exc)
        summary.store_errors += 1
        self._tracker.record_store_error(route, None, str(exc))
        logger.error("Store failure (%s) — cycle aborted: %s", route, exc, exc_info=True)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@asynccontextmanager
async def open_orchestrator(
    settings: Settings,
    *,
    provider: BaseConsultProvider | None = None,
    tracker: StatusTracker | None = None,
) -> AsyncIterator[CycleOrchestrator]:
    """Open the store and provider and yield a ready :class:`CycleOrchestrator`.

    The provider is closed and the database connection released on exit,
    including when the body raises or is cancelled.

    Args:
        settings: Application settings.
        provider: Consult provider to use instead of
            :class:`~marginbot.providers.api.consult.ConsultProvider`.
        tracker: Status tracker to use instead of a fresh one.
    """
    conn = await open_db(settings.database_path_resolved)
    try:
        async with AsyncExitStack() as stack:
            active: BaseConsultProvider = await stack.enter_async_context(
                provider or ConsultProvider(settings)
            )
            yield CycleOrchestrator(
                settings=settings,
                clients=ClientRepository(conn),
                credentials=CredentialRepository(conn),
                provider=active,
                tracker=tracker,
            )
    finally:
        await conn.close()
        logger.debug("Database connection closed.")
