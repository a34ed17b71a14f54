"""Per-tick world snapshots for external viewers.

Document format (version 1). Required fields stay stable; new fields are
optional additions only:

    {"version": 1, "tick": n,
     "agents": [{id, position, qi, age, alive, status, max_age, transistors}],
     "ore_nodes": [{id, position, ore_kind, quantity}],
     "recharge_nodes": [{id, position, charge, capacity, regen_per_tick}],
     "structures": [{id, position, kind, owner}],
     "zones": [{id, claimant, min_corner, max_corner, members}]}

Files: ``tick_000042.json`` (when per-tick is on) and ``latest.json``.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any

from .persistence import atomic_write_json
from .state import WorldState

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
LATEST_FILE = "latest.json"


def build_snapshot(state: WorldState) -> dict[str, Any]:
    """Viewer-facing snapshot of ``state`` (plain JSON data, no references)."""
    return {
        "version": SNAPSHOT_VERSION,
        "tick": state.tick,
        "agents": [
            {
                "id": agent.id,
                "position": agent.position.to_dict(),
                "qi": state.agent_qi(agent.id),
                "age": agent.age,
                "alive": agent.alive,
                "status": agent.status.value,
                "max_age": agent.max_age,
                "transistors": agent.transistors,
            }
            for _, agent in sorted(state.agents.items())
        ],
        "ore_nodes": [
            {
                "id": node.id,
                "position": node.position.to_dict(),
                "ore_kind": node.kind.value,
                "quantity": node.quantity,
            }
            for _, node in sorted(state.ore_nodes.items())
        ],
        "recharge_nodes": [
            {
                "id": node.id,
                "position": node.position.to_dict(),
                "charge": node.charge,
                "capacity": node.capacity,
                "regen_per_tick": node.regen_per_tick,
            }
            for _, node in sorted(state.recharge_nodes.items())
        ],
        "structures": [
            {
                "id": s.id,
                "position": s.position.to_dict(),
                "kind": s.kind.value,
                "owner": s.owner,
            }
            for _, s in sorted(state.structures.items())
        ],
        "zones": [z.to_dict() for _, z in sorted(state.zones.items())],
    }


def tick_filename(tick: int) -> str:
    return f"tick_{tick:06d}.json"


class SnapshotWriter:
    """Publishes snapshots atomically, optionally on one background worker.

    Publications are strictly ordered: a new one starts only after the
    previous one has finished. A failed publication, background or not,
    is logged and superseded by the next; it never fails the tick.
    """

    directory: Path
    per_tick: bool
    background: bool
    _executor: ThreadPoolExecutor | None
    _pending: Future[Path] | None

    def __init__(self, directory: str | Path, per_tick: bool = True, background: bool = False) -> None:
        self.directory = Path(directory)
        self.per_tick = per_tick
        self.background = background
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot") if background else None
        self._pending = None

    def publish(self, state: WorldState) -> Path:
        """Publish a snapshot of ``state``. Returns the latest.json path."""
        # Built now, so later ticks cannot change what gets written
        document = build_snapshot(state)
        latest = self.directory / LATEST_FILE
        if self._executor is None:
            try:
                return self._write(document)
            except OSError as e:
                logger.warning("Snapshot for tick %d failed, superseded by the next one: %s", document["tick"], e)
                return latest
        self._wait_previous()
        self._pending = self._executor.submit(self._write, document)
        return latest

    def _write(self, document: dict[str, Any]) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        if self.per_tick:
            atomic_write_json(self.directory / tick_filename(document["tick"]), document)
        latest = self.directory / LATEST_FILE
        atomic_write_json(latest, document)
        logger.debug("Published snapshot for tick %d", document["tick"])
        return latest

    def _wait_previous(self) -> None:
        if self._pending is None:
            return
        try:
            self._pending.result()
        except OSError as e:
            logger.warning("Snapshot publication failed, superseded by the next one: %s", e)
        self._pending = None

    def flush(self) -> None:
        """Block until any background publication has finished."""
        self._wait_previous()

    def close(self) -> None:
        self.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def load_latest(self) -> dict[str, Any] | None:
        path = self.directory / LATEST_FILE
        if not path.exists():
            return None
        with open(path) as f:
            data: dict[str, Any] = json.load(f)
        return data
