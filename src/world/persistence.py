"""Durable registries under the state directory.

    <state_dir>/wallets.json   address -> public key, private key, balance, mining cursor
    <state_dir>/world.json     tick, agents, nodes, structures, zones, agent balances, pool
    <state_dir>/runtime.json   status, last tick, message, action stats
    <state_dir>/snapshots/     published per-tick snapshots
    <state_dir>/events.jsonl   event log

Every file is written atomically (temp file, fsync, rename). wallets.json
and world.json change together: both are staged as ``*.pending`` files,
then ``commit.json`` names them, then each is renamed into place and the
journal removed. load() finishes a save that has a journal and discards
pending files that have none, so it only ever sees a matched pair.

A registry that exists but cannot be parsed, or that fails the
consistency check, is fatal: StateCorruptionError is raised and nothing
is overwritten.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import StateCorruptionError
from .ledger import is_agent_principal
from .logger import ActionStats
from .state import WorldState

logger = logging.getLogger(__name__)

WALLETS_FILE = "wallets.json"
WORLD_FILE = "world.json"
RUNTIME_FILE = "runtime.json"
SNAPSHOT_DIR = "snapshots"

JOURNAL_FILE = "commit.json"
PENDING_SUFFIX = ".pending"

RUNTIME_STATUSES = ("initialized", "running", "stopped")


def _write_synced(path: Path, data: Any, indent: int | None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=indent, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())


def atomic_write_json(path: Path, data: Any, indent: int | None = 2) -> None:
    """Write JSON to ``path`` via a temp file and os.replace."""
    temp_file = path.with_name(path.name + ".tmp")
    _write_synced(temp_file, data, indent)
    # Atomic rename - if interrupted here, the previous file remains valid
    os.replace(temp_file, path)


def _pending_path(path: Path) -> Path:
    return path.with_name(path.name + PENDING_SUFFIX)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StateCorruptionError(str(path), f"cannot parse ({e})") from e
    if not isinstance(data, dict):
        raise StateCorruptionError(str(path), "top-level value is not an object")
    return data


@dataclass
class RuntimeStatus:
    status: str = "initialized"
    last_tick: int = 0
    message: str | None = None
    action_stats: ActionStats = field(default_factory=ActionStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "last_tick": self.last_tick,
            "message": self.message,
            "action_stats": self.action_stats.to_dict(),
        }


class StateStore:
    """Loads and saves the durable registries for one state directory."""

    root: Path

    def __init__(self, state_dir: str | Path) -> None:
        self.root = Path(state_dir)

    @property
    def wallets_path(self) -> Path:
        return self.root / WALLETS_FILE

    @property
    def world_path(self) -> Path:
        return self.root / WORLD_FILE

    @property
    def runtime_path(self) -> Path:
        return self.root / RUNTIME_FILE

    @property
    def snapshot_dir(self) -> Path:
        return self.root / SNAPSHOT_DIR

    @property
    def journal_path(self) -> Path:
        return self.root / JOURNAL_FILE

    def exists(self) -> bool:
        return self.world_path.exists() or self.wallets_path.exists()

    # ===== WORLD + WALLETS =====

    def load(self) -> tuple[WorldState, dict[str, str]]:
        """Load (state, keyring). Missing files yield an empty world."""
        self._recover()
        wallets_raw = _read_json(self.wallets_path) if self.wallets_path.exists() else {"wallets": {}}
        world_raw = _read_json(self.world_path) if self.world_path.exists() else {}

        try:
            state, keyring = self._assemble(world_raw, wallets_raw)
        except (KeyError, TypeError, ValueError) as e:
            raise StateCorruptionError(str(self.root), f"malformed registry ({e})") from e

        problems = state.check_consistency()
        if problems:
            raise StateCorruptionError(str(self.root), "; ".join(problems[:5]))
        logger.debug("Loaded world at tick %d from %s", state.tick, self.root)
        return state, keyring

    @staticmethod
    def _assemble(
        world_raw: dict[str, Any], wallets_raw: dict[str, Any]
    ) -> tuple[WorldState, dict[str, str]]:
        wallets = wallets_raw.get("wallets", {})
        if not isinstance(wallets, dict):
            raise TypeError("wallets must be an object")
        ledger_raw = dict(world_raw.get("ledger", {}))
        balances = dict(ledger_raw.get("balances", {}))
        keyring: dict[str, str] = {}
        public: dict[str, Any] = {}
        for address, entry in wallets.items():
            public[address] = {
                "public_key": entry["public_key"],
                "mining_nonce": entry.get("mining_nonce", 0),
            }
            balances[address] = int(entry.get("balance", 0))
            if entry.get("private_key"):
                keyring[address] = str(entry["private_key"])
        ledger_raw["balances"] = balances
        merged = dict(world_raw)
        merged["ledger"] = ledger_raw
        merged["wallets"] = public
        return WorldState.from_dict(merged), keyring

    def save(self, state: WorldState, keyring: dict[str, str]) -> None:
        """Persist wallets and world as one unit (see the module docstring)."""
        data = state.to_dict()
        ledger_raw = data["ledger"]
        wallet_doc = {
            "wallets": {
                address: {
                    "public_key": w["public_key"],
                    "private_key": keyring.get(address),
                    "balance": ledger_raw["balances"].get(address, 0),
                    "mining_nonce": w["mining_nonce"],
                }
                for address, w in data["wallets"].items()
            }
        }
        ledger_raw["balances"] = {
            pid: amount for pid, amount in ledger_raw["balances"].items() if is_agent_principal(pid)
        }
        del data["wallets"]

        staged = {self.wallets_path: wallet_doc, self.world_path: data}
        for path, document in staged.items():
            _write_synced(_pending_path(path), document, indent=2)
        # The pair is committed once the journal exists
        atomic_write_json(self.journal_path, {"files": [path.name for path in staged]})
        self._roll_forward([path.name for path in staged])

    def _roll_forward(self, names: list[str]) -> None:
        for name in names:
            pending = _pending_path(self.root / name)
            # Already moved by an earlier, interrupted roll-forward
            if pending.exists():
                os.replace(pending, self.root / name)
        self.journal_path.unlink()

    def _recover(self) -> None:
        """Finish a committed save, or drop the leftovers of an uncommitted one."""
        if self.journal_path.exists():
            journal = _read_json(self.journal_path)
            names = journal.get("files")
            if not isinstance(names, list) or any(n not in (WALLETS_FILE, WORLD_FILE) for n in names):
                raise StateCorruptionError(str(self.journal_path), f"unexpected file list {names!r}")
            logger.warning("Completing interrupted save in %s", self.root)
            self._roll_forward(names)
            return
        for path in (self.wallets_path, self.world_path):
            pending = _pending_path(path)
            if pending.exists():
                logger.warning("Discarding uncommitted %s", pending)
                pending.unlink()

    # ===== RUNTIME STATUS =====

    def load_runtime(self) -> RuntimeStatus:
        if not self.runtime_path.exists():
            return RuntimeStatus()
        raw = _read_json(self.runtime_path)
        status = raw.get("status", "initialized")
        if status not in RUNTIME_STATUSES:
            raise StateCorruptionError(str(self.runtime_path), f"unknown status {status!r}")
        try:
            return RuntimeStatus(
                status=status,
                last_tick=int(raw.get("last_tick", 0)),
                message=raw.get("message"),
                action_stats=ActionStats.from_dict(raw.get("action_stats", {})),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise StateCorruptionError(str(self.runtime_path), f"malformed runtime status ({e})") from e

    def save_runtime(self, runtime: RuntimeStatus) -> None:
        atomic_write_json(self.runtime_path, runtime.to_dict())

    def set_status(self, status: str, message: str | None = None, last_tick: int | None = None) -> RuntimeStatus:
        if status not in RUNTIME_STATUSES:
            raise ValueError(f"unknown runtime status {status!r}")
        runtime = self.load_runtime()
        runtime.status = status
        runtime.message = message
        if last_tick is not None:
            runtime.last_tick = last_tick
        self.save_runtime(runtime)
        return runtime

    def stop_requested(self) -> bool:
        """True when another process has marked the runtime stopped."""
        try:
            return self.load_runtime().status == "stopped"
        except StateCorruptionError:
            logger.warning("Unreadable %s while polling for stop", self.runtime_path)
            return False

    # ===== RESET =====

    def reset(self, events_file: str | None = "events.jsonl") -> None:
        """Remove all registries, snapshots and events (``init``)."""
        paths = [
            self.wallets_path,
            self.world_path,
            self.runtime_path,
            self.journal_path,
            _pending_path(self.wallets_path),
            _pending_path(self.world_path),
        ]
        if events_file:
            paths.append(self.root / events_file)
        for path in paths:
            if path.exists():
                path.unlink()
        if self.snapshot_dir.exists():
            for snapshot in self.snapshot_dir.glob("*.json"):
                snapshot.unlink()
