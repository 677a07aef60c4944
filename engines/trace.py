"""Progress trace for one story generation request.

The trace is polled by clients while the pipeline runs, so every mutation
that a poller may observe is followed by a ``persist`` call on the attached
store. Stages are visited in the fixed order of ``STAGE_BLUEPRINT`` and the
overall ``progress`` never decreases.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

StageId = Literal["validations", "route", "cache", "prompt", "llm", "persistence", "session"]
StageStatus = Literal["pending", "running", "done", "error"]
TraceStatus = Literal["running", "done", "error"]

# (id, label, target progress)
STAGE_BLUEPRINT: tuple[tuple[str, str, int], ...] = (
    ("validations", "Validating profile and limits", 10),
    ("route", "Selecting topic and learning route", 25),
    ("cache", "Looking for a cached story", 40),
    ("prompt", "Preparing narrative prompt", 55),
    ("llm", "Generating story with AI", 82),
    ("persistence", "Saving story", 92),
    ("session", "Creating reading session", 98),
)

CACHE_SKIPPED_STAGES: tuple[str, ...] = ("prompt", "llm", "persistence")
SKIPPED_DETAIL = "skipped (cache reuse)"

# Running a stage reports progress this far below its target.
_RUNNING_OFFSET = 12


class TraceTerminalError(RuntimeError):
    """Raised when a finished trace is mutated."""


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TraceStage:
    id: str
    label: str
    target: int
    status: StageStatus = "pending"
    detail: Optional[str] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    duration_ms: Optional[int] = None


@dataclass
class GenerationTrace:
    trace_id: str
    learner_id: str
    status: TraceStatus = "running"
    progress: int = 0
    current_stage: Optional[str] = None
    started_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)
    finished_at: Optional[int] = None
    total_ms: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    stages: List[TraceStage] = field(default_factory=list)

    @classmethod
    def create(cls, trace_id: str, learner_id: str, *, clock: Callable[[], int] = _now_ms) -> "GenerationTrace":
        now = clock()
        stages = [TraceStage(id=stage_id, label=label, target=target) for stage_id, label, target in STAGE_BLUEPRINT]
        return cls(trace_id=trace_id, learner_id=learner_id, started_at=now, updated_at=now, stages=stages)

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return self.status in ("done", "error")

    def stage(self, stage_id: str) -> TraceStage:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise KeyError(f"Unknown trace stage: {stage_id}")

    def _guard(self) -> None:
        if self.is_terminal:
            raise TraceTerminalError(f"Trace {self.trace_id} is already {self.status}")

    def _bump(self, value: int) -> None:
        self.progress = max(self.progress, min(100, value))

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------
    def mark_running(self, stage_id: str, detail: Optional[str] = None, *, now: Optional[int] = None) -> TraceStage:
        self._guard()
        stamp = _now_ms() if now is None else now
        stage = self.stage(stage_id)
        if stage.started_at is None:
            stage.started_at = stamp
        stage.status = "running"
        stage.detail = detail
        self.current_stage = stage_id
        self.updated_at = stamp
        self._bump(max(stage.target - _RUNNING_OFFSET, 1))
        return stage

    def mark_done(self, stage_id: str, detail: Optional[str] = None, *, now: Optional[int] = None) -> TraceStage:
        self._guard()
        stamp = _now_ms() if now is None else now
        stage = self.stage(stage_id)
        if stage.started_at is None:
            stage.started_at = stamp
        stage.status = "done"
        if detail is not None:
            stage.detail = detail
        stage.ended_at = stamp
        stage.duration_ms = max(0, stamp - stage.started_at)
        self.current_stage = stage_id
        self.updated_at = stamp
        self._bump(stage.target)
        return stage

    def mark_error(
        self,
        stage_id: str,
        message: str,
        *,
        code: Optional[str] = None,
        now: Optional[int] = None,
    ) -> TraceStage:
        self._guard()
        stamp = _now_ms() if now is None else now
        stage = self.stage(stage_id)
        if stage.started_at is None:
            stage.started_at = stamp
        stage.status = "error"
        stage.detail = message
        stage.ended_at = stamp
        stage.duration_ms = max(0, stamp - stage.started_at)
        self.current_stage = stage_id
        self.status = "error"
        self.error = message
        self.error_code = code
        self.updated_at = stamp
        self.finished_at = stamp
        self.total_ms = max(0, stamp - self.started_at)
        return stage

    def finalize_ok(self, detail: Optional[str] = None, *, now: Optional[int] = None) -> None:
        self._guard()
        stamp = _now_ms() if now is None else now
        last = self.stages[-1]
        if last.status != "done":
            self.mark_done(last.id, detail, now=stamp)
        elif detail is not None:
            last.detail = detail
        self.status = "done"
        self.progress = 100
        self.updated_at = stamp
        self.finished_at = stamp
        self.total_ms = max(0, stamp - self.started_at)

    def skip_remaining(self, stage_ids: Iterable[str], detail: str = SKIPPED_DETAIL, *, now: Optional[int] = None) -> List[str]:
        """Retire still-pending stages as done without running them.

        Allowed on a terminal trace as the final sweep. Progress is not
        bumped by skipped stages.
        """
        stamp = _now_ms() if now is None else now
        skipped = []
        for stage_id in stage_ids:
            stage = self.stage(stage_id)
            if stage.status != "pending":
                continue
            stage.status = "done"
            stage.detail = detail
            stage.started_at = stamp
            stage.ended_at = stamp
            stage.duration_ms = 0
            skipped.append(stage_id)
        if skipped:
            self.updated_at = stamp
        return skipped

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "GenerationTrace":
        data = dict(payload)
        stages = [TraceStage(**stage) for stage in data.pop("stages", [])]
        return cls(stages=stages, **data)


class TraceRecorder:
    """Binds a trace to a persistence callback and saves after observable mutations."""

    def __init__(self, trace: GenerationTrace, persist: Callable[[str, str, Dict[str, Any]], None]):
        self.trace = trace
        self._persist = persist
        self._persisted_once = False

    def save(self) -> None:
        self._persist(self.trace.trace_id, self.trace.learner_id, self.trace.to_dict())
        self._persisted_once = True

    def running(self, stage_id: str, detail: Optional[str] = None) -> None:
        self.trace.mark_running(stage_id, detail)
        if not self._persisted_once:
            self.save()

    def done(self, stage_id: str, detail: Optional[str] = None) -> None:
        self.trace.mark_done(stage_id, detail)
        self.save()

    def error(self, stage_id: str, message: str, *, code: Optional[str] = None) -> None:
        self.trace.mark_error(stage_id, message, code=code)
        self.save()

    def finalize(self, detail: Optional[str] = None) -> None:
        self.trace.finalize_ok(detail)
        self.save()

    def skip(self, stage_ids: Iterable[str], detail: str = SKIPPED_DETAIL) -> None:
        if self.trace.skip_remaining(stage_ids, detail):
            self.save()

    @property
    def current_stage(self) -> str:
        return self.trace.current_stage or self.trace.stages[0].id
