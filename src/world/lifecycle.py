"""Agent lifecycle: spawning -> active <-> stalled -> dead.

Zero Qi never kills an agent; it only stalls it. Death comes from age or
an explicit hazard/corruption kill, and is announced exactly once. A dead
agent's Qi goes to its living offspring, or back to the ambient pool.
"""

from __future__ import annotations

import logging
import math

from ..config_schema import AppConfig
from .errors import WorldCommandError
from .ledger import agent_principal
from .logger import TickEvents
from .state import Agent, AgentStatus, Position, WorldState

logger = logging.getLogger(__name__)

DEATH_REASONS = ("age", "hazard", "corruption")

# Neighbour offsets in the order children are placed
_NEIGHBOUR_OFFSETS: list[tuple[int, int, int]] = sorted(
    (dx, dy, dz)
    for dx in (-1, 0, 1)
    for dy in (-1, 0, 1)
    for dz in (-1, 0, 1)
    if (dx, dy, dz) != (0, 0, 0)
)


class AgentLifecycle:
    """Lifecycle transitions. All methods mutate the state they are given."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    # ===== SPAWN =====

    def spawn(
        self,
        state: WorldState,
        wallet: str,
        position: Position,
        events: TickEvents,
        *,
        name: str | None = None,
        max_age: int | None = None,
        parent_id: int | None = None,
        memory: list[str] | None = None,
    ) -> Agent:
        """Register a new agent at the first free position walking +x."""
        if wallet not in state.wallets:
            raise WorldCommandError(f"unknown wallet {wallet}")
        if not position.in_bounds(self.config.world.bounds):
            raise WorldCommandError(f"{position} is outside the world")
        agent_id = state.allocate_agent_id()
        lifespan = max_age if max_age is not None else self.config.lifecycle.default_max_age
        agent = Agent(
            id=agent_id,
            name=name or f"agent-{agent_id}",
            wallet=wallet,
            position=state.free_position_near(position),
            max_age=max(1, lifespan),
            parent_id=parent_id,
            memory=list(memory or []),
            born_tick=state.tick,
        )
        state.agents[agent_id] = agent
        state.ledger.create_principal(agent_principal(agent_id))
        events.emit(
            "agent_spawned",
            agent_id=agent_id,
            wallet=wallet,
            position=agent.position.to_dict(),
            parent_id=parent_id,
        )
        logger.info("Spawned agent %d at %s", agent_id, agent.position)
        return agent

    def free_neighbour(self, state: WorldState, position: Position) -> Position | None:
        """First in-bounds, unoccupied cell adjacent to ``position``."""
        for dx, dy, dz in _NEIGHBOUR_OFFSETS:
            candidate = position.offset(dx, dy, dz)
            if candidate.in_bounds(self.config.world.bounds) and state.agent_at(candidate) is None:
                return candidate
        return None

    # ===== REPRODUCTION =====

    def reproduce(
        self, state: WorldState, parent: Agent, position: Position, events: TickEvents
    ) -> Agent:
        """Asexual reproduction. The caller has checked threshold and space."""
        rules = self.config.lifecycle
        state.ledger.spend(parent.principal, rules.reproduction_cost, "reproduction_cost")
        remaining = state.agent_qi(parent.id)
        endowment = math.floor(rules.child_qi_fraction * remaining)
        inherited = parent.memory[-rules.inherited_memory:] if rules.inherited_memory else []
        child = self.spawn(
            state,
            parent.wallet,
            position,
            events,
            max_age=parent.max_age,
            parent_id=parent.id,
            memory=inherited,
        )
        state.ledger.transfer(parent.principal, child.principal, endowment, "reproduction_endowment")
        parent.offspring.append(child.id)
        events.emit(
            "agent_reproduced",
            parent_id=parent.id,
            child_id=child.id,
            position=child.position.to_dict(),
            cost=rules.reproduction_cost,
            endowment=endowment,
        )
        return child

    # ===== STALL =====

    def stall(self, state: WorldState, agent: Agent, events: TickEvents) -> None:
        if agent.status in (AgentStatus.ACTIVE, AgentStatus.SPAWNING):
            agent.status = AgentStatus.STALLED
            events.emit("agent_stalled", agent_id=agent.id)
            logger.info("Agent %d stalled (no Qi)", agent.id)

    # ===== DEATH =====

    def kill(self, state: WorldState, agent_id: int, reason: str, events: TickEvents) -> bool:
        """Kill an agent. Returns False if it was already dead."""
        if reason not in DEATH_REASONS:
            raise WorldCommandError(f"unknown death reason {reason!r}")
        agent = state.agents.get(agent_id)
        if agent is None:
            raise WorldCommandError(f"unknown agent {agent_id}")
        if not agent.alive:
            return False
        agent.status = AgentStatus.DEAD
        agent.death_reason = reason
        events.emit("agent_died", agent_id=agent.id, reason=reason, age=agent.age)
        logger.info("Agent %d died (%s) at age %d", agent.id, reason, agent.age)
        self._settle_estate(state, agent, events)
        return True

    def _settle_estate(self, state: WorldState, agent: Agent, events: TickEvents) -> None:
        estate = state.agent_qi(agent.id)
        if estate == 0:
            return
        heirs = sorted(c for c in agent.offspring if c in state.agents and state.agents[c].alive)
        if not heirs:
            state.ledger.spend(agent.principal, estate, "estate_released")
            events.emit("qi_released", agent_id=agent.id, amount=estate)
            return
        share, remainder = divmod(estate, len(heirs))
        for index, heir in enumerate(heirs):
            amount = share + (remainder if index == 0 else 0)
            if amount == 0:
                continue
            state.ledger.transfer(agent.principal, agent_principal(heir), amount, "inheritance")
            events.emit("qi_inherited", from_agent=agent.id, to_agent=heir, amount=amount)

    # ===== PER-TICK PASS =====

    def advance(self, state: WorldState, events: TickEvents) -> None:
        """Age every living agent and apply transitions, in ascending ID order."""
        for agent in state.alive_agents():
            if agent.status == AgentStatus.SPAWNING:
                agent.status = AgentStatus.ACTIVE
                events.emit("agent_activated", agent_id=agent.id)
            agent.age += 1
            if agent.age >= agent.max_age:
                self.kill(state, agent.id, "age", events)

        # Inheritance above can refill stalled agents, so unstall afterwards
        for agent in state.alive_agents():
            if agent.status == AgentStatus.STALLED and state.agent_qi(agent.id) > 0:
                agent.status = AgentStatus.ACTIVE
                events.emit("agent_unstalled", agent_id=agent.id)

    # ===== COMMANDS =====

    def extend_life(self, state: WorldState, agent_id: int, max_age: int) -> int:
        agent = state.agents.get(agent_id)
        if agent is None:
            raise WorldCommandError(f"unknown agent {agent_id}")
        if not agent.alive:
            raise WorldCommandError(f"agent {agent_id} is dead")
        agent.max_age = max(1, max_age)
        return agent.max_age
