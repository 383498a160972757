"""Per-job signal emitter.

Handles emission, persistence, and fan-out of Signals.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from harvest.signals.types import Signal, SignalType
from harvest.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class SignalEmitter:
    """Emits, persists, and broadcasts signals for a single job.

    Signals are:
    - Immutable once emitted
    - Assigned monotonic sequence numbers, also across concurrent page tasks
    - Persisted to a JSONL ledger in append-only mode
    - Broadcast to subscribers in real time
    """

    def __init__(self, job_id: str, ledger_path: Path | None = None) -> None:
        self._job_id = job_id
        self._sequence = 0
        self._ledger_path = ledger_path
        self._subscribers: list[Callable[[Signal], Any]] = []
        self._signals: list[Signal] = []
        self._lock = asyncio.Lock()

        if self._ledger_path:
            self._ledger_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def signals(self) -> list[Signal]:
        """Return all emitted signals (read-only copy)."""
        return list(self._signals)

    def subscribe(self, callback: Callable[[Signal], Any]) -> None:
        """Register a subscriber for real-time signal streaming."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Signal], Any]) -> None:
        """Remove a subscriber."""
        self._subscribers = [s for s in self._subscribers if s is not callback]

    async def emit(self, signal_type: SignalType, payload: dict[str, Any] | None = None) -> Signal:
        """Emit a signal. This is the ONLY way to create signals."""
        async with self._lock:
            self._sequence += 1
            signal = Signal(
                sequence=self._sequence,
                signal_type=signal_type,
                timestamp=datetime.now(timezone.utc),
                job_id=self._job_id,
                payload=payload or {},
            )
            self._signals.append(signal)

            if self._ledger_path:
                self._persist(signal)

        await self._broadcast(signal)

        return signal

    def _persist(self, signal: Signal) -> None:
        """Append signal to the JSONL ledger file."""
        with open(self._ledger_path, "a") as f:
            f.write(signal.model_dump_json() + "\n")

    async def _broadcast(self, signal: Signal) -> None:
        """Notify all subscribers of a new signal."""
        for subscriber in self._subscribers:
            try:
                result = subscriber(signal)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                # Subscribers must not break the emission pipeline
                emit_structured_error(
                    logger,
                    code=ErrorCode.SIGNAL_SUBSCRIBER_FAILURE,
                    message=str(exc),
                    suppressed=True,
                    job_id=self._job_id,
                    details={"signal_type": signal.signal_type.value},
                )

    async def emit_phase_transition(
        self, url: str, from_phase: str, to_phase: str, context: dict[str, Any] | None = None
    ) -> Signal:
        """Convenience: emit a PHASE_TRANSITION signal for one page."""
        return await self.emit(
            SignalType.PHASE_TRANSITION,
            {"url": url, "from_phase": from_phase, "to_phase": to_phase, **(context or {})},
        )

    async def emit_job_progress(
        self, total: int, processed: int, succeeded: int, failed: int
    ) -> Signal:
        """Convenience: emit a JOB_PROGRESS signal."""
        return await self.emit(
            SignalType.JOB_PROGRESS,
            {
                "total": total,
                "processed": processed,
                "succeeded": succeeded,
                "failed": failed,
            },
        )

    async def emit_job_complete(
        self, total_pages: int, succeeded: int, failed: int, total_duration_s: float
    ) -> Signal:
        """Convenience: emit a JOB_COMPLETE signal."""
        return await self.emit(
            SignalType.JOB_COMPLETE,
            {
                "total_pages": total_pages,
                "succeeded": succeeded,
                "failed": failed,
                "total_duration_s": total_duration_s,
            },
        )

    async def emit_job_failed(self, failure_reason: str, processed: int) -> Signal:
        """Convenience: emit a JOB_FAILED signal."""
        return await self.emit(
            SignalType.JOB_FAILED,
            {"failure_reason": failure_reason, "processed": processed},
        )

    @staticmethod
    def load_ledger(ledger_path: Path) -> list[Signal]:
        """Load all signals from a JSONL ledger file."""
        signals = []
        if ledger_path.exists():
            with open(ledger_path) as f:
                for line in f:
                    line = line.strip()
                    if line:
                        signals.append(Signal.model_validate_json(line))
        return signals
