"""JSONL event log - the append-only record of everything the world did.

Events carry the tick and a monotonic sequence number but no wall-clock
time, so two runs from the same start with the same brain outputs produce
byte-identical logs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """One domain event. ``sequence`` is assigned when the event is recorded."""

    tick: int
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "tick": self.tick,
            "kind": self.kind,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            tick=int(data["tick"]),
            kind=str(data["kind"]),
            payload=dict(data.get("payload", {})),
            sequence=int(data.get("sequence", 0)),
        )


class TickEvents:
    """Buffer of events produced while one tick (or command) is processed.

    Nothing reaches the EventLog until the caller commits the buffer, so a
    tick that fails halfway leaves no trace.
    """

    tick: int
    events: list[Event]

    def __init__(self, tick: int) -> None:
        self.tick = tick
        self.events = []

    def emit(self, kind: str, /, **payload: Any) -> Event:
        event = Event(tick=self.tick, kind=kind, payload=payload)
        self.events.append(event)
        return event

    def of_kind(self, kind: str) -> list[Event]:
        return [e for e in self.events if e.kind == kind]

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)


class EventLog:
    """Append-only event log, in memory with an optional JSONL file.

    An existing file is appended to and the sequence counter resumes after
    its last record.
    """

    output_path: Path | None
    events: list[Event]
    _sequence: int

    def __init__(self, output_file: str | Path | None = None) -> None:
        self.output_path = Path(output_file) if output_file else None
        self.events = []
        self._sequence = 0
        if self.output_path is not None:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            if self.output_path.exists():
                self._sequence = self._last_sequence()

    def _last_sequence(self) -> int:
        assert self.output_path is not None
        last = 0
        with open(self.output_path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    last = max(last, int(json.loads(line).get("sequence", 0)))
                except (json.JSONDecodeError, ValueError, AttributeError):
                    logger.warning("Skipping unreadable event line in %s", self.output_path)
        return last

    @property
    def sequence(self) -> int:
        """Sequence number of the most recently recorded event."""
        return self._sequence

    def record(self, events: Iterable[Event]) -> list[Event]:
        """Assign sequence numbers and append events in order."""
        recorded: list[Event] = []
        for event in events:
            self._sequence += 1
            event.sequence = self._sequence
            recorded.append(event)
        self.events.extend(recorded)
        if self.output_path is not None and recorded:
            with open(self.output_path, "a") as f:
                for event in recorded:
                    f.write(json.dumps(event.to_dict(), sort_keys=True) + "\n")
        return recorded

    def log(self, tick: int, kind: str, /, **payload: Any) -> Event:
        """Record a single event immediately."""
        return self.record([Event(tick=tick, kind=kind, payload=payload)])[0]

    def read_recent(self, n: int = 50) -> list[dict[str, Any]]:
        """Read the last N events from the file (or memory when file-less)."""
        if self.output_path is None:
            return [e.to_dict() for e in self.events[-n:]]
        if not self.output_path.exists():
            return []
        lines = self.output_path.read_text().strip().split("\n")
        lines = [line for line in lines if line]
        recent = lines[-n:] if len(lines) > n else lines
        return [json.loads(line) for line in recent]


class ActionStats:
    """Per-agent counters of accepted and rejected actions by type."""

    _per_agent: dict[int, dict[str, Any]]

    def __init__(self) -> None:
        self._per_agent = {}

    def record(self, agent_id: int, action_type: str, accepted: bool) -> None:
        if agent_id not in self._per_agent:
            self._per_agent[agent_id] = {"accepted": 0, "rejected": 0, "by_type": {}}
        stats = self._per_agent[agent_id]
        stats["accepted" if accepted else "rejected"] += 1
        stats["by_type"][action_type] = stats["by_type"].get(action_type, 0) + 1

    def for_agent(self, agent_id: int) -> dict[str, Any]:
        return self._per_agent.get(agent_id, {"accepted": 0, "rejected": 0, "by_type": {}})

    def to_dict(self) -> dict[str, Any]:
        return {
            str(agent_id): {
                "accepted": s["accepted"],
                "rejected": s["rejected"],
                "by_type": dict(sorted(s["by_type"].items())),
            }
            for agent_id, s in sorted(self._per_agent.items())
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionStats":
        stats = cls()
        for key, raw in data.items():
            stats._per_agent[int(key)] = {
                "accepted": int(raw.get("accepted", 0)),
                "rejected": int(raw.get("rejected", 0)),
                "by_type": {str(k): int(v) for k, v in raw.get("by_type", {}).items()},
            }
        return stats
