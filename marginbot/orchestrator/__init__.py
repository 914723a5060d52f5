"""Cycle orchestration: distribution, rate windows, pipeline and status.

Public API
----------
* :func:`~marginbot.orchestrator.scheduler.run_continuous` — default runtime
  entry-point; runs cycles on a fixed interval until stopped.
* :class:`~marginbot.orchestrator.runner.CycleOrchestrator` /
  :func:`~marginbot.orchestrator.runner.open_orchestrator` — single-flight
  cycles over all active credentials; used for ``--once`` mode and testing.
* :func:`~marginbot.orchestrator.pipeline.process_record` /
  :func:`~marginbot.orchestrator.pipeline.run_credential` — per-record
  pipeline and per-credential worker.
* :func:`~marginbot.orchestrator.distributor.split_batch` — round-robin
  batch distribution with a per-credential cap.
* :class:`~marginbot.orchestrator.rate_window.RateWindowGate` — per-tenant
  hourly rate window.
* :class:`~marginbot.orchestrator.metrics.StatusTracker` /
  :func:`~marginbot.orchestrator.metrics.write_status_file` — live status and
  rolling error counters.
"""

from marginbot.orchestrator.distributor import HARD_CAP, effective_cap, split_batch
from marginbot.orchestrator.metrics import StatusTracker, write_status_file
from marginbot.orchestrator.pipeline import (
    AlreadyRunning,
    CredentialSummary,
    CycleSummary,
    RecordOutcome,
    SummaryCounters,
    process_record,
    run_credential,
)
from marginbot.orchestrator.rate_window import RateWindowGate
from marginbot.orchestrator.runner import CycleOrchestrator, open_orchestrator
from marginbot.orchestrator.scheduler import run_continuous

__all__ = [
    # Distribution
    "HARD_CAP",
    "effective_cap",
    "split_batch",
    # Rate window
    "RateWindowGate",
    # Pipeline primitives
    "RecordOutcome",
    "SummaryCounters",
    "CredentialSummary",
    "CycleSummary",
    "AlreadyRunning",
    "process_record",
    "run_credential",
    # Orchestrator
    "CycleOrchestrator",
    "open_orchestrator",
    "run_continuous",
    # Status
    "StatusTracker",
    "write_status_file",
]
