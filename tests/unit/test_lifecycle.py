"""Tests for AgentLifecycle - spawn, ageing, stall, death and inheritance."""

from __future__ import annotations

import pytest

from src.world.errors import WorldCommandError
from src.world.lifecycle import AgentLifecycle
from src.world.logger import TickEvents
from src.world.state import AgentStatus, Position, WorldState
from src.world.wallets import WalletStore


class TestSpawn:
    def test_spawn_starts_spawning(
        self, lifecycle: AgentLifecycle, state: WorldState, wallet_store: WalletStore, events: TickEvents
    ) -> None:
        wallet = wallet_store.create_wallet().address

        agent = lifecycle.spawn(state, wallet, Position(2, 0, 0), events, name="scout")

        assert agent.id == 1
        assert agent.name == "scout"
        assert agent.status == AgentStatus.SPAWNING
        assert agent.max_age == 50
        assert state.agent_qi(agent.id) == 0
        assert events.kinds() == ["agent_spawned"]
        assert state.check_consistency() == []

    def test_spawn_walks_past_occupied_cells(
        self, lifecycle: AgentLifecycle, state: WorldState, wallet_store: WalletStore, events: TickEvents
    ) -> None:
        wallet = wallet_store.create_wallet().address

        first = lifecycle.spawn(state, wallet, Position.origin(), events)
        second = lifecycle.spawn(state, wallet, Position.origin(), events)

        assert first.position == Position(0, 0, 0)
        assert second.position == Position(1, 0, 0)

    def test_unknown_wallet(self, lifecycle: AgentLifecycle, state: WorldState, events: TickEvents) -> None:
        with pytest.raises(WorldCommandError):
            lifecycle.spawn(state, "missing", Position.origin(), events)

    def test_outside_world(
        self, lifecycle: AgentLifecycle, state: WorldState, wallet_store: WalletStore, events: TickEvents
    ) -> None:
        wallet = wallet_store.create_wallet().address
        with pytest.raises(WorldCommandError):
            lifecycle.spawn(state, wallet, Position(0, 0, 17), events)


class TestAdvance:
    def test_spawning_becomes_active_and_ages(
        self, lifecycle: AgentLifecycle, state: WorldState, wallet_store: WalletStore, events: TickEvents
    ) -> None:
        wallet = wallet_store.create_wallet().address
        agent = lifecycle.spawn(state, wallet, Position.origin(), TickEvents(0))

        lifecycle.advance(state, events)

        assert agent.status == AgentStatus.ACTIVE
        assert agent.age == 1
        assert events.kinds() == ["agent_activated"]

    def test_old_age_kills_exactly_once(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=0, max_age=2)
        events = TickEvents(1)

        for _ in range(4):
            lifecycle.advance(state, events)

        assert agent.status == AgentStatus.DEAD
        assert agent.death_reason == "age"
        assert agent.age == 2
        died = events.of_kind("agent_died")
        assert len(died) == 1
        assert died[0].payload == {"agent_id": agent.id, "reason": "age", "age": 2}

    def test_stall_is_not_death(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=0)
        events = TickEvents(1)
        lifecycle.stall(state, agent, events)

        for _ in range(10):
            lifecycle.advance(state, events)

        assert agent.status == AgentStatus.STALLED
        assert agent.alive
        assert events.of_kind("agent_died") == []

    def test_refilled_agent_unstalls(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent, wallet_store) -> None:
        agent = spawn_agent(qi=0)
        events = TickEvents(1)
        lifecycle.stall(state, agent, events)
        state.ledger.mint(agent.wallet, 2, "genesis")
        wallet_store.infuse_agent(agent.wallet, agent.id, 2)

        lifecycle.advance(state, events)

        assert agent.status == AgentStatus.ACTIVE
        assert events.kinds() == ["agent_stalled", "agent_unstalled"]


class TestDeath:
    def test_kill_twice(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=0)
        events = TickEvents(1)

        assert lifecycle.kill(state, agent.id, "hazard", events) is True
        assert lifecycle.kill(state, agent.id, "corruption", events) is False
        assert len(events.of_kind("agent_died")) == 1
        assert agent.death_reason == "hazard"

    def test_unknown_reason(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=0)
        with pytest.raises(WorldCommandError):
            lifecycle.kill(state, agent.id, "boredom", TickEvents(1))

    def test_heirless_estate_goes_to_pool(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=6)
        events = TickEvents(1)

        lifecycle.kill(state, agent.id, "hazard", events)

        assert state.agent_qi(agent.id) == 0
        assert state.ledger.ambient_pool == 6
        assert events.of_kind("qi_released")[0].payload == {"agent_id": agent.id, "amount": 6}
        assert state.check_consistency() == []

    def test_estate_split_among_living_offspring(
        self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent
    ) -> None:
        parent = spawn_agent(qi=7)
        first = spawn_agent(qi=0, position=Position(1, 0, 0))
        second = spawn_agent(qi=0, position=Position(2, 0, 0))
        gone = spawn_agent(qi=0, position=Position(3, 0, 0))
        parent.offspring = [gone.id, second.id, first.id]
        lifecycle.kill(state, gone.id, "hazard", TickEvents(1))
        events = TickEvents(1)

        lifecycle.kill(state, parent.id, "hazard", events)

        # 7 split two ways; the remainder goes to the lowest living ID
        assert state.agent_qi(first.id) == 4
        assert state.agent_qi(second.id) == 3
        assert state.agent_qi(gone.id) == 0
        assert [e.payload["to_agent"] for e in events.of_kind("qi_inherited")] == [first.id, second.id]
        assert state.ledger.ambient_pool == 0
        assert state.check_consistency() == []

    def test_inheritance_unstalls_heir(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        parent = spawn_agent(qi=4, max_age=1)
        child = spawn_agent(qi=0, position=Position(1, 0, 0))
        parent.offspring = [child.id]
        events = TickEvents(1)
        lifecycle.stall(state, child, events)

        lifecycle.advance(state, events)

        assert not parent.alive
        assert child.status == AgentStatus.ACTIVE
        assert state.agent_qi(child.id) == 4


class TestExtendLife:
    def test_extend(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=0)

        assert lifecycle.extend_life(state, agent.id, 500) == 500
        assert lifecycle.extend_life(state, agent.id, 0) == 1

    def test_dead_agent_cannot_be_extended(self, lifecycle: AgentLifecycle, state: WorldState, spawn_agent) -> None:
        agent = spawn_agent(qi=0)
        lifecycle.kill(state, agent.id, "hazard", TickEvents(1))

        with pytest.raises(WorldCommandError):
            lifecycle.extend_life(state, agent.id, 10)
