"""Unit tests for the cycle orchestrator and the continuous scheduler.

Tests cover:
- ``CycleOrchestrator.run_cycle`` — credential loading, cap and round-robin
  distribution, concurrent workers, merged summary, failure isolation and
  the single-flight guard.
- Store failures while loading credentials or records.
- The cycle logging context and the live status view.
- ``run_and_record`` / ``_cycle_loop`` / ``run_continuous`` — status file
  writes, fixed-interval looping and graceful SIGTERM shutdown.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_credential, make_record

from marginbot.core.exceptions import StorageError
from marginbot.core.logging_config import CYCLE_ID_CTX
from marginbot.core.models import ClientRecord, Credential
from marginbot.core.settings import Settings
from marginbot.orchestrator.metrics import StatusTracker
from marginbot.orchestrator.pipeline import AlreadyRunning, CycleSummary
from marginbot.orchestrator.rate_window import RateWindowGate
from marginbot.orchestrator.runner import (
    NO_CREDENTIALS_MESSAGE,
    ROUTE_CYCLE,
    ROUTE_FETCH_BATCH,
    ROUTE_FETCH_CREDENTIALS,
    CycleOrchestrator,
)
from marginbot.orchestrator.scheduler import _cycle_loop, run_and_record, run_continuous
from marginbot.providers.base import BaseConsultProvider, ProviderResponse
from marginbot.storage.repository import ClientRepository, CredentialRepository

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _result_body(document: str | None) -> dict[str, Any]:
    return {"data": [{"documentNumber": document, "availableMarginValue": "100,00"}]}


@pytest.fixture()
def settings(clean_env: None, tmp_path: Path) -> Settings:
    return Settings(
        database_path=str(tmp_path / "orchestrator.db"),
        status_path=str(tmp_path / "status.json"),
        wait_between_calls_s=0,
        wait_between_records_s=0,
        max_records_per_credential=2,
    )


@pytest.fixture()
def provider() -> MagicMock:
    """Provider that creates, authorizes and finds a result for every record."""
    p = MagicMock(spec=BaseConsultProvider)
    p.create_consult.return_value = ProviderResponse(201, {"id": "c-1"})
    p.authorize.return_value = ProviderResponse(200, {})

    async def _fetch(credential: Credential, document: str) -> ProviderResponse:
        return ProviderResponse(200, _result_body(document))

    p.fetch_result.side_effect = _fetch
    return p


@pytest.fixture()
def clients() -> MagicMock:
    repo = MagicMock(spec=ClientRepository)
    repo.fetch_pending_batch.return_value = []
    repo.update_by_document.return_value = 1
    return repo


@pytest.fixture()
def credentials() -> MagicMock:
    repo = MagicMock(spec=CredentialRepository)
    repo.fetch_active.return_value = [
        make_credential(1, tenant="t1"),
        make_credential(2, tenant="t2"),
        make_credential(3, tenant="t3"),
    ]
    return repo


def _records(n: int) -> list[ClientRecord]:
    return [make_record(i, document_number=f"{i:011d}") for i in range(1, n + 1)]


def _orchestrator(
    settings: Settings,
    clients: MagicMock,
    credentials: MagicMock,
    provider: MagicMock,
    **kwargs: Any,
) -> CycleOrchestrator:
    return CycleOrchestrator(
        settings=settings,
        clients=clients,
        credentials=credentials,
        provider=provider,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Full cycle
# ---------------------------------------------------------------------------


class TestRunCycle:
    """A cycle distributes the batch over every credential and merges results."""

    @pytest.mark.asyncio
    async def test_three_credentials_cap_two_five_records(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(5)

        async def _create(credential: Credential, record: ClientRecord) -> ProviderResponse:
            if record.id == 2:
                return ProviderResponse(400, {"message": "already in progress"})
            return ProviderResponse(201, {"id": f"c-{record.id}"})

        provider.create_consult.side_effect = _create
        orchestrator = _orchestrator(settings, clients, credentials, provider)

        result = await orchestrator.run_cycle("manual")

        assert isinstance(result, CycleSummary)
        clients.fetch_pending_batch.assert_awaited_once_with(6)
        assert result.ok is True
        assert result.message is None
        assert result.credentials_available == 3
        assert result.credentials_processed == 3
        assert [s.records_selected for s in result.credential_summaries] == [2, 2, 1]
        assert [s.position for s in result.credential_summaries] == [1, 2, 3]
        assert result.records_selected == 5
        assert result.consults_created == 4
        assert result.consults_active_400 == 1
        assert provider.authorize.await_count == 4
        assert provider.fetch_result.await_count == 5
        assert result.results_found == 5
        assert result.rows_updated == 5
        assert result.total_errors == 0
        assert orchestrator.last_summary is result
        assert orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_records_dealt_round_robin(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(5)
        seen: dict[int, list[int | None]] = {}

        async def _create(credential: Credential, record: ClientRecord) -> ProviderResponse:
            seen.setdefault(credential.id, []).append(record.id)
            return ProviderResponse(201, {"id": "c"})

        provider.create_consult.side_effect = _create

        await _orchestrator(settings, clients, credentials, provider).run_cycle()

        assert seen == {1: [1, 4], 2: [2, 5], 3: [3]}

    @pytest.mark.asyncio
    async def test_configured_cap_above_ceiling_is_clamped(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        settings.max_records_per_credential = 1000

        await _orchestrator(settings, clients, credentials, provider).run_cycle()

        clients.fetch_pending_batch.assert_awaited_once_with(750)

    @pytest.mark.asyncio
    async def test_each_credential_opens_its_window(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        gate = MagicMock(spec=RateWindowGate)
        gate.acquire.return_value = 0.0
        tracker = StatusTracker()

        await _orchestrator(
            settings, clients, credentials, provider, gate=gate, tracker=tracker
        ).run_cycle("scheduler")

        gate.prune.assert_called_once()
        assert sorted(c.args[0] for c in gate.acquire.await_args_list) == [
            "tenant:t1",
            "tenant:t2",
            "tenant:t3",
        ]
        assert tracker.last_cycle()["windows_started"] == 3
        assert tracker.last_cycle()["source"] == "scheduler"

    @pytest.mark.asyncio
    async def test_no_credentials(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        credentials.fetch_active.return_value = []

        result = await _orchestrator(settings, clients, credentials, provider).run_cycle()

        assert result.ok is False
        assert result.message == NO_CREDENTIALS_MESSAGE
        assert result.store_errors == 0
        clients.fetch_pending_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_credentials_with_no_pending_records(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        result = await _orchestrator(settings, clients, credentials, provider).run_cycle()

        assert result.ok is True
        assert result.credentials_processed == 3
        assert result.records_selected == 0
        provider.create_consult.assert_not_awaited()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestRunCycleFailures:
    """Failures end the cycle cleanly with a complete summary."""

    @pytest.mark.asyncio
    async def test_credential_store_failure(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        credentials.fetch_active.side_effect = StorageError("no such table: credentials")
        orchestrator = _orchestrator(settings, clients, credentials, provider)

        result = await orchestrator.run_cycle()

        assert result.ok is False
        assert result.message == "no such table: credentials"
        assert result.store_errors == 1
        assert orchestrator.tracker.store_errors.last.route == ROUTE_FETCH_CREDENTIALS

    @pytest.mark.asyncio
    async def test_batch_store_failure(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.side_effect = StorageError("database is locked")
        orchestrator = _orchestrator(settings, clients, credentials, provider)

        result = await orchestrator.run_cycle()

        assert result.ok is False
        assert result.store_errors == 1
        assert result.credentials_processed == 0
        assert orchestrator.tracker.store_errors.last.route == ROUTE_FETCH_BATCH
        provider.create_consult.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_failure_counts_one_store_error(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        credentials.fetch_active.side_effect = RuntimeError("unexpected")
        orchestrator = _orchestrator(settings, clients, credentials, provider)

        result = await orchestrator.run_cycle()

        assert result.ok is False
        assert result.message == "unexpected"
        assert result.store_errors == 1
        assert orchestrator.tracker.store_errors.last.route == ROUTE_CYCLE
        assert orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_failed_credential_does_not_stop_siblings(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(3)
        gate = MagicMock(spec=RateWindowGate)

        async def _acquire(key: str) -> float:
            if key == "tenant:t2":
                raise RuntimeError("window state corrupted")
            return 0.0

        gate.acquire.side_effect = _acquire

        result = await _orchestrator(
            settings, clients, credentials, provider, gate=gate
        ).run_cycle()

        assert result.ok is False
        assert result.message == "Failed on 1 credential(s): 2"
        assert result.credentials_processed == 3
        assert result.results_found == 2
        assert result.store_errors == 1
        assert result.credential_summaries[1].message == "window state corrupted"

    @pytest.mark.asyncio
    async def test_cancelled_worker_becomes_failed_summary(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(3)
        gate = MagicMock(spec=RateWindowGate)

        async def _acquire(key: str) -> float:
            if key in ("tenant:t1", "tenant:t3"):
                raise asyncio.CancelledError
            return 0.0

        gate.acquire.side_effect = _acquire

        result = await _orchestrator(
            settings, clients, credentials, provider, gate=gate
        ).run_cycle()

        assert result.ok is False
        assert result.message == "Failed on 2 credential(s): 1, 3"
        failed = result.credential_summaries[0]
        assert failed.ok is False
        assert failed.message == "CancelledError"
        assert failed.records_selected == 1
        assert failed.store_errors == 1
        assert result.store_errors == 2


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------


class TestSingleFlight:
    """A trigger while a cycle is running returns AlreadyRunning and changes nothing."""

    @pytest.mark.asyncio
    async def test_second_trigger_is_rejected(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(1)
        entered = asyncio.Event()
        release = asyncio.Event()

        async def _slow_create(credential: Credential, record: ClientRecord) -> ProviderResponse:
            entered.set()
            await release.wait()
            return ProviderResponse(201, {"id": "c"})

        provider.create_consult.side_effect = _slow_create
        orchestrator = _orchestrator(settings, clients, credentials, provider)

        first = asyncio.create_task(orchestrator.run_cycle("manual"))
        await entered.wait()

        second = await orchestrator.run_cycle("manual")

        assert isinstance(second, AlreadyRunning)
        assert second.message == "A cycle is already running."
        assert orchestrator.is_running is True
        assert orchestrator.last_summary is None
        assert orchestrator.get_live_status()["is_running"] is True

        release.set()
        finished = await first

        assert isinstance(finished, CycleSummary)
        assert orchestrator.last_summary is finished
        assert orchestrator.is_running is False
        assert credentials.fetch_active.await_count == 1

    @pytest.mark.asyncio
    async def test_next_cycle_allowed_after_finish(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(3)
        sleep = AsyncMock()
        gate = RateWindowGate(0.0, sleep=sleep)
        orchestrator = _orchestrator(settings, clients, credentials, provider, gate=gate)

        first = await orchestrator.run_cycle()
        second = await orchestrator.run_cycle()

        assert isinstance(second, CycleSummary)
        assert orchestrator.last_summary is second
        assert second is not first
        assert second.results_found == 3
        assert second.rows_updated == 3
        assert len(gate) == 3
        sleep.assert_not_awaited()


# ---------------------------------------------------------------------------
# Context and status
# ---------------------------------------------------------------------------


class TestCycleContextAndStatus:
    @pytest.mark.asyncio
    async def test_cycle_id_shared_by_workers_and_reset(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        clients.fetch_pending_batch.return_value = _records(3)
        seen: list[str] = []

        async def _create(credential: Credential, record: ClientRecord) -> ProviderResponse:
            seen.append(CYCLE_ID_CTX.get())
            return ProviderResponse(201, {"id": "c"})

        provider.create_consult.side_effect = _create

        await _orchestrator(settings, clients, credentials, provider).run_cycle()

        assert len(seen) == 3
        assert len(set(seen)) == 1
        assert len(seen[0]) == 8
        assert CYCLE_ID_CTX.get() == "-"

    @pytest.mark.asyncio
    async def test_live_status_before_and_after(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        orchestrator = _orchestrator(settings, clients, credentials, provider)
        assert orchestrator.get_status_snapshot() is None
        assert orchestrator.get_live_status()["last_run"] is None

        await orchestrator.run_cycle("startup")

        status = orchestrator.get_live_status()
        assert status["is_running"] is False
        assert status["current_cycle"] is None
        assert status["last_cycle"]["source"] == "startup"
        assert status["last_run"]["last_cycle"]["source"] == "startup"
        assert len(status["last_run"]["summary_lines"]) == 3
        json.dumps(status)

    def test_gate_default_is_one_hour(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        orchestrator = _orchestrator(settings, clients, credentials, provider)
        assert orchestrator.gate.window_s == 3600.0

    def test_empty_gate_is_kept(
        self,
        settings: Settings,
        clients: MagicMock,
        credentials: MagicMock,
        provider: MagicMock,
    ) -> None:
        gate = RateWindowGate()
        orchestrator = _orchestrator(settings, clients, credentials, provider, gate=gate)
        assert orchestrator.gate is gate


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


def _fake_orchestrator() -> MagicMock:
    orchestrator = MagicMock(spec=CycleOrchestrator)
    orchestrator.run_cycle.return_value = CycleSummary()
    orchestrator.get_live_status.return_value = {"is_running": False, "last_run": None}
    return orchestrator


class TestRunAndRecord:
    @pytest.mark.asyncio
    async def test_writes_status_file(self, settings: Settings) -> None:
        orchestrator = _fake_orchestrator()

        await run_and_record(orchestrator, settings, "scheduler")

        orchestrator.run_cycle.assert_awaited_once_with("scheduler")
        data = json.loads(Path(settings.status_path).read_text(encoding="utf-8"))
        assert data == {"is_running": False, "last_run": None}

    @pytest.mark.asyncio
    async def test_cycle_exception_is_logged_and_file_still_written(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        orchestrator = _fake_orchestrator()
        orchestrator.run_cycle.side_effect = RuntimeError("kaboom")

        with caplog.at_level(logging.ERROR, logger="marginbot.orchestrator.scheduler"):
            await run_and_record(orchestrator, settings, "scheduler")

        assert "Unhandled exception in scheduler cycle" in caplog.text
        assert Path(settings.status_path).exists()


class TestCycleLoop:
    @pytest.mark.asyncio
    async def test_startup_cycle_only_when_scheduler_disabled(self, settings: Settings) -> None:
        settings.scheduler_enabled = False
        orchestrator = _fake_orchestrator()

        await _cycle_loop(orchestrator, settings)

        orchestrator.run_cycle.assert_awaited_once_with("startup")

    @pytest.mark.asyncio
    async def test_loops_on_fixed_interval(self, settings: Settings) -> None:
        settings.run_on_startup = False
        settings.cycle_interval_s = 1800
        orchestrator = _fake_orchestrator()
        sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError])

        with (
            patch("marginbot.orchestrator.scheduler.asyncio.sleep", sleep),
            pytest.raises(asyncio.CancelledError),
        ):
            await _cycle_loop(orchestrator, settings)

        assert [c.args[0] for c in sleep.await_args_list] == [1800, 1800, 1800]
        assert [c.args[0] for c in orchestrator.run_cycle.await_args_list] == [
            "scheduler",
            "scheduler",
        ]


class TestRunContinuous:
    """run_continuous owns the orchestrator lifecycle and SIGTERM handling."""

    @staticmethod
    def _patched_open(orchestrator: MagicMock) -> Any:
        @asynccontextmanager
        async def _open(settings: Settings) -> AsyncIterator[MagicMock]:
            yield orchestrator

        return patch("marginbot.orchestrator.scheduler.open_orchestrator", _open)

    @pytest.mark.asyncio
    async def test_returns_when_scheduler_disabled(self, settings: Settings) -> None:
        settings.scheduler_enabled = False
        orchestrator = _fake_orchestrator()

        with self._patched_open(orchestrator):
            await run_continuous(settings)

        orchestrator.run_cycle.assert_awaited_once_with("startup")

    @pytest.mark.asyncio
    async def test_sigterm_cancels_loop_and_removes_handler(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        loop = asyncio.get_running_loop()
        captured: dict[Any, Any] = {}
        removed: list[Any] = []
        orchestrator = _fake_orchestrator()

        async def _cycle_then_signal(source: str) -> CycleSummary:
            captured[signal.SIGTERM]()
            captured[signal.SIGTERM]()
            await asyncio.Event().wait()
            return CycleSummary()

        orchestrator.run_cycle.side_effect = _cycle_then_signal

        with (
            self._patched_open(orchestrator),
            patch.object(
                loop,
                "add_signal_handler",
                side_effect=lambda sig, cb: captured.update({sig: cb}),
            ),
            patch.object(
                loop,
                "remove_signal_handler",
                side_effect=lambda sig: removed.append(sig),
            ),
            caplog.at_level(logging.INFO, logger="marginbot.orchestrator.scheduler"),
            pytest.raises(asyncio.CancelledError),
        ):
            await run_continuous(settings)

        assert removed == [signal.SIGTERM]
        requested = [r for r in caplog.records if "graceful shutdown requested" in r.message]
        assert len(requested) == 1
        assert "Graceful shutdown complete (signal: SIGTERM)." in caplog.text
