"""Per-session turn state: idle, streaming a turn, or compacting context."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPACTING = "compacting"


class SessionBusyError(RuntimeError):
    """Raised when a send or compaction is attempted while the session is not idle."""

    def __init__(self, session_id: str, state: TurnState) -> None:
        super().__init__(f"Agent session {session_id} is busy ({state.value})")
        self.session_id = session_id
        self.state = state


@dataclass
class TurnOutcome:
    generation: int
    text: str = ""
    interrupted: bool = False
    error: str | None = None
    duration_s: float = 0.0


class TurnStateMachine:
    """Tracks one session's turn lifecycle.

    Every turn or compaction gets a new generation number. Interrupting a turn
    retires its generation immediately, so output the agent still produces for it
    can be recognized as stale and dropped.
    """

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self.state = TurnState.IDLE
        self.generation = 0
        self.interrupted = False
        self.total_cost_usd = 0.0
        self.turn_count = 0
        self._buffer: list[str] = []
        self._started_at: float | None = None
        self._retired: set[int] = set()

    @property
    def is_idle(self) -> bool:
        return self.state is TurnState.IDLE

    @property
    def elapsed_s(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    @property
    def buffered_text(self) -> str:
        return "".join(self._buffer)

    def is_current(self, generation: int) -> bool:
        return generation == self.generation and generation not in self._retired

    def start_turn(self) -> int:
        self._require_idle()
        self.state = TurnState.STREAMING
        self.interrupted = False
        self._buffer.clear()
        self._started_at = time.monotonic()
        self.generation += 1
        return self.generation

    def append_text(self, text: str) -> None:
        if self.state is TurnState.STREAMING and text:
            self._buffer.append(text)

    def take_text(self) -> str:
        """Return and clear the unflushed streamed text."""
        text = "".join(self._buffer)
        self._buffer.clear()
        return text

    def discard_text(self) -> None:
        self._buffer.clear()

    def complete(self, cost_usd: float = 0.0) -> TurnOutcome:
        if self.state is not TurnState.STREAMING:
            raise RuntimeError(f"No turn in progress for session {self.session_id}")
        if cost_usd > 0:
            self.total_cost_usd += cost_usd
        self.turn_count += 1
        return self._finish(TurnOutcome(generation=self.generation))

    def interrupt(self) -> TurnOutcome | None:
        """Return to idle at once, without waiting for the agent to acknowledge."""
        if self.state is TurnState.IDLE:
            return None
        self.interrupted = True
        self._retired.add(self.generation)
        return self._finish(TurnOutcome(generation=self.generation, interrupted=True))

    def fail(self, message: str) -> TurnOutcome | None:
        if self.state is TurnState.IDLE:
            return None
        return self._finish(TurnOutcome(generation=self.generation, error=message))

    def start_compaction(self) -> int:
        self._require_idle()
        self.state = TurnState.COMPACTING
        self.interrupted = False
        self._started_at = time.monotonic()
        self.generation += 1
        return self.generation

    def finish_compaction(self) -> TurnOutcome:
        if self.state is not TurnState.COMPACTING:
            raise RuntimeError(f"No compaction in progress for session {self.session_id}")
        return self._finish(TurnOutcome(generation=self.generation))

    def _require_idle(self) -> None:
        if self.state is not TurnState.IDLE:
            raise SessionBusyError(self.session_id, self.state)

    def _finish(self, outcome: TurnOutcome) -> TurnOutcome:
        outcome.text = self.take_text()
        outcome.duration_s = self.elapsed_s
        self.state = TurnState.IDLE
        self._started_at = None
        return outcome
