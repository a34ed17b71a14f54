"""WorldRunner - drives the TickEngine for N ticks with pacing and stop.

The runner owns durable state for the duration of a run: it loads nothing
itself but persists the world and the runtime status after every tick.
Stop requests (stop() from this process, or runtime status "stopped"
written by another process) are honoured only between ticks.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from ..config_schema import AppConfig
from ..world.logger import EventLog
from ..world.persistence import StateStore
from ..world.snapshot import SnapshotWriter
from ..world.state import WorldState
from ..world.wallets import WalletStore
from .brain import Brain, BrainAdapter
from .engine import TickEngine, TickResult

logger = logging.getLogger(__name__)


class WorldRunner:
    """Runs ticks against a StateStore."""

    def __init__(
        self,
        config: AppConfig,
        store: StateStore,
        state: WorldState,
        keyring: dict[str, str],
        brain: Brain,
        event_log: EventLog | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.state = state
        self.keyring = keyring
        self.wallets = WalletStore(state, config, keyring)
        self.runtime = store.load_runtime()
        snapshots = (
            SnapshotWriter(
                store.snapshot_dir,
                per_tick=config.snapshots.per_tick,
                background=config.snapshots.background,
            )
            if config.snapshots.enabled
            else None
        )
        self.engine = TickEngine(
            config,
            BrainAdapter(brain, config.brain.timeout_seconds),
            self.wallets.sign,
            event_log=event_log,
            snapshots=snapshots,
            stats=self.runtime.action_stats,
        )
        self._stop = threading.Event()
        self._running = False
        self.ticks_run = 0

    # ===== CONTROL =====

    def stop(self) -> None:
        """Ask the run loop to stop before the next tick."""
        self._stop.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def stop_requested(self) -> bool:
        return self._stop.is_set() or self.store.stop_requested()

    def tick_interval(self, tick_rate: float | None = None, delay_ms: int | None = None) -> float:
        """Seconds to wait between ticks (tick rate wins over delay)."""
        rate = tick_rate if tick_rate is not None else self.config.runner.tick_rate
        if rate:
            return 1.0 / rate
        delay = delay_ms if delay_ms is not None else self.config.runner.delay_ms
        return delay / 1000.0

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "tick": self.state.tick,
            "ticks_run": self.ticks_run,
            "alive_agents": len(self.state.alive_agents()),
            "engine": self.engine.status.value,
        }

    # ===== RUN =====

    def run(
        self,
        ticks: int | None,
        tick_rate: float | None = None,
        delay_ms: int | None = None,
    ) -> WorldState:
        """Run up to ``ticks`` ticks (forever if None) and return the final state."""
        interval = self.tick_interval(tick_rate, delay_ms)
        self.ticks_run = 0
        self._running = True
        self.runtime.status = "running"
        self.runtime.message = None
        self.store.save_runtime(self.runtime)
        logger.info("Run started at tick %d (%s ticks)", self.state.tick, ticks if ticks is not None else "unbounded")

        message = "completed"
        try:
            while ticks is None or self.ticks_run < ticks:
                if self.stop_requested():
                    message = "stop requested"
                    logger.info("Stop requested; halting before tick %d", self.state.tick + 1)
                    break
                self.step()
                if interval > 0 and (ticks is None or self.ticks_run < ticks):
                    # wait() returns early when stop() is called
                    self._stop.wait(interval)
        except Exception as e:
            message = f"failed: {e}"
            raise
        finally:
            self._running = False
            if self.engine.snapshots is not None:
                self.engine.snapshots.close()
            self.runtime.status = "stopped"
            self.runtime.last_tick = self.state.tick
            self.runtime.message = f"{message} after {self.ticks_run} tick(s)"
            self.store.save_runtime(self.runtime)
            logger.info("Run ended at tick %d: %s", self.state.tick, self.runtime.message)
        return self.state

    def step(self) -> TickResult:
        """Run one tick, persist its result, then record its events.

        If saving fails the tick is dropped: in-memory state, event log and
        stats all stay at the previous tick.
        """
        result = self.engine.step(self.state, commit=False)
        self.store.save(result.state, self.keyring)
        self.state = result.state
        self.wallets.state = result.state
        self.engine.commit(result)
        self.ticks_run += 1
        self.runtime.last_tick = self.state.tick
        if not self.store.stop_requested():
            self.store.save_runtime(self.runtime)
        return result
