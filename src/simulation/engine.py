"""TickEngine - advances the world by exactly one tick.

Per tick, on a private copy of the input state:

    1. tick_started
    2. for each alive agent in ascending ID order: observe, ask the brain
       (bounded), sign with the owning wallet, validate and apply at once,
       so later agents see earlier agents' commits
    3. lifecycle pass (ageing, death, inheritance, unstall)
    4. environment (recharge regeneration, ore decay)
    5. tick_completed, consistency check

Only if every step succeeds are the events recorded and the snapshot
published. An exception leaves the caller's state and the event log as
they were. A caller that persists the state itself steps with
``commit=False`` and calls commit() once the state is durable, so the
event log never runs ahead of the saved world.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..config_schema import AppConfig
from ..world.actions import Action, ActionRequest, Rejected, qi_cost_for
from ..world.errors import WorldCommandError
from ..world.lifecycle import AgentLifecycle
from ..world.logger import ActionStats, Event, EventLog, TickEvents
from ..world.snapshot import SnapshotWriter
from ..world.state import Agent, OreKind, WorldState
from ..world.validator import ActionValidator
from .brain import BrainAdapter, BrainDecision

logger = logging.getLogger(__name__)

Signer = Callable[[str, bytes], str]


class EngineStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"


@dataclass
class TickResult:
    """Outcome of one step: the new state and what happened.

    ``events`` holds the recorded (sequenced) events once the tick is
    committed; until then it is empty and ``pending`` holds the buffer.
    """

    state: WorldState
    events: list[Event]
    rejections: list[Rejected] = field(default_factory=list)
    tick: int = 0
    pending: TickEvents | None = None
    stat_rows: list[tuple[int, str, bool]] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.pending is None


class TickEngine:
    """Runs ticks. Holds no world state between calls."""

    def __init__(
        self,
        config: AppConfig,
        adapter: BrainAdapter,
        signer: Signer,
        event_log: EventLog | None = None,
        snapshots: SnapshotWriter | None = None,
        stats: ActionStats | None = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.signer = signer
        self.event_log = event_log if event_log is not None else EventLog()
        self.snapshots = snapshots
        self.stats = stats if stats is not None else ActionStats()
        self.lifecycle = AgentLifecycle(config)
        self.validator = ActionValidator(config, self.lifecycle)
        self.status = EngineStatus.IDLE

    def step(self, state: WorldState, commit: bool = True) -> TickResult:
        """Process one tick. ``state`` itself is never modified.

        With ``commit=False`` nothing is recorded or published; the caller
        must pass the result to commit() after persisting ``result.state``.
        """
        self.status = EngineStatus.PROCESSING
        try:
            work = state.copy()
            work.ledger.reset_flows()
            tick = work.tick + 1
            events = TickEvents(tick)
            events.emit("tick_started", tick=tick)

            rejections: list[Rejected] = []
            stat_rows: list[tuple[int, str, bool]] = []
            accepted = 0
            for agent_id in [a.id for a in work.alive_agents()]:
                agent = work.agents[agent_id]
                if not agent.alive:
                    continue
                decision = self.adapter.decide(
                    work.observe(agent_id, self.config.world.scan_range, self.config.world.zone_size)
                )
                action = self._sign(work, agent, decision.request)
                outcome = self.validator.validate_and_apply(work, action, events)
                stat_rows.append((agent_id, action.action_type.value, outcome.accepted))
                if isinstance(outcome, Rejected):
                    rejections.append(outcome)
                else:
                    accepted += 1
                self._remember(agent, tick, decision, outcome.accepted, outcome)

            self.lifecycle.advance(work, events)
            self._environment(work, events)
            work.tick = tick
            events.emit(
                "tick_completed",
                tick=tick,
                accepted=accepted,
                rejected=len(rejections),
                alive=len(work.alive_agents()),
                flows=work.ledger.flow_summary(),
            )

            problems = work.check_consistency()
            if problems:
                raise RuntimeError(f"tick {tick} broke world invariants: {'; '.join(problems[:3])}")
        except Exception:
            logger.exception("Tick %d failed; world left unchanged", state.tick + 1)
            raise
        finally:
            self.status = EngineStatus.IDLE

        logger.info("Tick %d: %d accepted, %d rejected", tick, accepted, len(rejections))
        result = TickResult(
            state=work,
            events=[],
            rejections=rejections,
            tick=tick,
            pending=events,
            stat_rows=stat_rows,
        )
        if commit:
            self.commit(result)
        return result

    def commit(self, result: TickResult) -> TickResult:
        """Record the tick's events and stats, then publish its snapshot."""
        if result.pending is None:
            raise ValueError(f"tick {result.tick} is already committed")
        result.events = self.event_log.record(result.pending)
        result.pending = None
        for agent_id, action_type, ok in result.stat_rows:
            self.stats.record(agent_id, action_type, ok)
        if self.snapshots is not None:
            self.snapshots.publish(result.state)
        return result

    # ===== ACTIONS =====

    def _sign(self, state: WorldState, agent: Agent, request: ActionRequest) -> Action:
        action = Action(
            agent_id=agent.id,
            action_type=request.action_type,
            payload=dict(request.payload),
            nonce=agent.last_nonce + 1,
            qi_cost=qi_cost_for(request.action_type, self.config.costs),
        )
        try:
            action.signature = self.signer(agent.wallet, action.signing_bytes())
        except WorldCommandError as e:
            # Unsigned write actions are rejected by the validator
            logger.warning("Cannot sign for agent %d: %s", agent.id, e)
        return action

    def _remember(
        self,
        agent: Agent,
        tick: int,
        decision: BrainDecision,
        accepted: bool,
        outcome: object,
    ) -> None:
        note = f"tick {tick}: {decision.request.token}"
        if decision.fallback:
            note += f" (fallback: {decision.reason})"
        if accepted:
            note += " -> ok"
        else:
            assert isinstance(outcome, Rejected)
            note += f" -> rejected ({outcome.code})"
        agent.remember(note, self.config.lifecycle.memory_limit)

    # ===== ENVIRONMENT =====

    def _environment(self, state: WorldState, events: TickEvents) -> None:
        cap = self.config.world.max_qi_supply
        for _, node in sorted(state.recharge_nodes.items()):
            wanted = min(node.regen_per_tick, node.capacity - node.charge)
            if wanted <= 0:
                continue
            from_pool = state.ledger.draw_from_pool(wanted)
            minted = wanted - from_pool
            if cap is not None:
                minted = max(0, min(minted, cap - state.ledger.minted))
            if minted:
                state.ledger.mint_to_world(minted)
            gained = from_pool + minted
            if gained:
                node.charge += gained
                events.emit(
                    "recharge_regenerated",
                    node_id=node.id,
                    amount=gained,
                    from_pool=from_pool,
                    minted=minted,
                    charge=node.charge,
                )

        for _, ore in sorted(state.ore_nodes.items()):
            if ore.decay_per_tick <= 0 or ore.quantity <= 0:
                continue
            lost = min(ore.decay_per_tick, ore.quantity)
            ore.quantity -= lost
            if ore.kind == OreKind.QI:
                state.ledger.release_to_pool(lost)
            events.emit("ore_node_decayed", node_id=ore.id, amount=lost, remaining=ore.quantity)
            if ore.quantity == 0:
                events.emit("ore_node_drained", node_id=ore.id)
