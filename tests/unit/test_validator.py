"""Tests for ActionValidator - authorization, fees and every action type."""

from __future__ import annotations

from typing import Callable

import pytest

from src.world.actions import Accepted, Action, ActionType, Rejected
from src.world.lifecycle import AgentLifecycle
from src.world.logger import TickEvents
from src.world.state import (
    Agent,
    AgentStatus,
    OreKind,
    OreNode,
    Position,
    RechargeNode,
    StructureKind,
    WorldState,
)
from src.world.validator import ActionValidator
from src.world.wallets import WalletStore

Spawn = Callable[..., Agent]
Sign = Callable[..., Action]


def _add_ore(state: WorldState, position: Position, quantity: int, kind: OreKind = OreKind.QI) -> OreNode:
    node = OreNode(id=state.allocate_node_id(), position=position, kind=kind, quantity=quantity)
    state.ore_nodes[node.id] = node
    if kind == OreKind.QI:
        state.ledger.mint_to_world(quantity)
    return node


def _add_recharge(state: WorldState, position: Position, charge: int) -> RechargeNode:
    node = RechargeNode(
        id=state.allocate_node_id(), position=position, capacity=charge, charge=charge, regen_per_tick=1
    )
    state.recharge_nodes[node.id] = node
    state.ledger.mint_to_world(charge)
    return node


def _apply(
    validator: ActionValidator, state: WorldState, action: Action, events: TickEvents
) -> Accepted | Rejected:
    outcome = validator.validate_and_apply(state, action, events)
    assert state.check_consistency() == []
    return outcome


def _code(outcome: Accepted | Rejected) -> str:
    assert isinstance(outcome, Rejected), "expected a rejection"
    return outcome.code


class TestFeesAndStall:
    """Write fees, starvation and the single-rejection-event rule."""

    def test_move_debits_fee(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        """An agent with 3 Qi moving one step ends with 2 Qi at the new position."""
        agent = spawn_agent(qi=3)

        outcome = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0}), events)

        assert isinstance(outcome, Accepted)
        assert outcome.qi_spent == 1
        assert state.agent_qi(agent.id) == 2
        assert agent.position == Position(1, 0, 0)
        assert len(events.of_kind("qi_spent")) == 1
        moved = events.of_kind("agent_moved")
        assert len(moved) == 1
        assert moved[0].payload["origin"] == {"x": 0, "y": 0, "z": 0}
        assert moved[0].payload["target"] == {"x": 1, "y": 0, "z": 0}
        assert state.ledger.ambient_pool == 1

    def test_broke_harvest_rejected_without_spend(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        """Harvesting at 0 Qi is rejected once and charges nothing."""
        agent = spawn_agent(qi=0)
        _add_ore(state, Position(1, 0, 0), 5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE), events)

        assert _code(outcome) == "insufficient_qi"
        assert len(events.of_kind("action_rejected")) == 1
        assert events.of_kind("qi_spent") == []
        assert state.agent_qi(agent.id) == 0
        assert state.ore_nodes[1].quantity == 5

    def test_starved_agent_stalls_not_dies(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        agent = spawn_agent(qi=0)

        _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0}), events)

        assert agent.status == AgentStatus.STALLED
        assert agent.alive
        assert events.kinds() == ["action_rejected", "agent_stalled"]
        assert events.of_kind("agent_died") == []

    def test_free_actions_need_no_qi(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=0)

        for action_type in (ActionType.SCAN, ActionType.INSPECT, ActionType.IDLE):
            outcome = _apply(validator, state, sign_action(agent, action_type), events)
            assert isinstance(outcome, Accepted)
            assert outcome.qi_spent == 0

        assert agent.last_nonce == 0
        assert events.of_kind("qi_spent") == []

    def test_free_actions_skip_signature(self, validator, state, events, spawn_agent: Spawn) -> None:
        agent = spawn_agent(qi=0)
        unsigned = Action(agent.id, ActionType.SCAN, {}, nonce=1, qi_cost=0)

        assert isinstance(_apply(validator, state, unsigned, events), Accepted)

    def test_rejection_leaves_state_untouched(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        agent = spawn_agent(qi=5)
        before = state.canonical_json()

        outcome = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 9, "dy": 0, "dz": 0}), events)

        assert _code(outcome) == "move_out_of_range"
        assert state.canonical_json() == before


class TestAuthorization:
    """Signature, nonce and liveness checks."""

    def test_unknown_agent(self, validator, state, events) -> None:
        outcome = _apply(validator, state, Action(99, ActionType.SCAN, {}, nonce=1, qi_cost=0), events)
        assert _code(outcome) == "agent_not_found"

    def test_dead_agent(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign, lifecycle: AgentLifecycle
    ) -> None:
        agent = spawn_agent(qi=2)
        lifecycle.kill(state, agent.id, "hazard", TickEvents(state.tick))

        outcome = _apply(validator, state, sign_action(agent, ActionType.SCAN), events)

        assert _code(outcome) == "agent_dead"

    def test_wrong_key(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign, wallet_store: WalletStore
    ) -> None:
        agent = spawn_agent(qi=2)
        other = wallet_store.create_wallet().address
        action = sign_action(agent, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0})
        action.signature = wallet_store.sign(other, action.signing_bytes())

        assert _code(_apply(validator, state, action, events)) == "invalid_signature"
        assert state.agent_qi(agent.id) == 2

    def test_tampered_payload(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=2)
        action = sign_action(agent, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0})
        action.payload = {"dx": 2, "dy": 0, "dz": 0}

        assert _code(_apply(validator, state, action, events)) == "invalid_signature"

    def test_replay_is_stale(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)
        action = sign_action(agent, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0})

        assert isinstance(_apply(validator, state, action, events), Accepted)
        assert agent.last_nonce == 1
        assert _code(_apply(validator, state, action, events)) == "stale_nonce"
        assert state.agent_qi(agent.id) == 4

    def test_nonce_gap(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.BUILD, {"kind": "basic"}, nonce=3), events)

        assert _code(outcome) == "nonce_gap"
        assert outcome.error.details == {"expected": 1, "got": 3}

    def test_rejection_does_not_consume_nonce(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        agent = spawn_agent(qi=5)

        rejected = _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE), events)
        assert _code(rejected) == "no_source_in_range"
        assert agent.last_nonce == 0

        retry = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 0, "dy": 1, "dz": 0}), events)
        assert isinstance(retry, Accepted)
        assert retry.action.nonce == 1
        assert agent.last_nonce == 1

    def test_bad_payload_after_auth(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 1}), events)

        assert _code(outcome) == "invalid_payload"
        assert agent.last_nonce == 0


class TestMovement:
    @pytest.mark.parametrize(
        "offset,code",
        [
            ((0, 0, 0), "invalid_payload"),
            ((4, 0, 0), "move_out_of_range"),
            ((0, -4, 2), "move_out_of_range"),
        ],
    )
    def test_illegal_offsets(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign, offset, code
    ) -> None:
        agent = spawn_agent(qi=5)
        dx, dy, dz = offset

        outcome = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": dx, "dy": dy, "dz": dz}), events)

        assert _code(outcome) == code

    def test_diagonal_within_radius(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 3, "dy": -3, "dz": 3}), events)

        assert isinstance(outcome, Accepted)
        assert agent.position == Position(3, -3, 3)

    def test_out_of_bounds(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5, position=Position(16, 0, 0))

        outcome = _apply(validator, state, sign_action(agent, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0}), events)

        assert _code(outcome) == "out_of_bounds"

    def test_occupied(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        mover = spawn_agent(qi=5)
        blocker = spawn_agent(qi=0, position=Position(1, 0, 0))

        outcome = _apply(validator, state, sign_action(mover, ActionType.MOVE, {"dx": 1, "dy": 0, "dz": 0}), events)

        assert _code(outcome) == "position_occupied"
        assert outcome.error.details == {"occupant": blocker.id}


class TestResources:
    def test_harvest_takes_up_to_limit(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=3)
        node = _add_ore(state, Position(1, 0, 0), 5)

        first = _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE), events)
        assert isinstance(first, Accepted)
        assert state.agent_qi(agent.id) == 5
        assert node.quantity == 2

        _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE), events)
        assert state.agent_qi(agent.id) == 6
        assert node.quantity == 0
        assert len(events.of_kind("ore_node_drained")) == 1

    def test_harvest_depleted(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=3)
        node = _add_ore(state, Position(1, 0, 0), 0)

        outcome = _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE), events)
        assert _code(outcome) == "source_depleted"

        named = _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE, {"node_id": node.id}), events)
        assert _code(named) == "source_depleted"

    def test_harvest_out_of_range(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=3)
        node = _add_ore(state, Position(3, 0, 0), 5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE, {"node_id": node.id}), events)

        assert _code(outcome) == "no_source_in_range"

    def test_harvest_prefers_nearest(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=3)
        far = _add_ore(state, Position(1, 1, 1), 5)
        near = _add_ore(state, Position(0, 0, 1), 5)

        _apply(validator, state, sign_action(agent, ActionType.HARVEST_QI_ORE), events)

        assert near.quantity == 2
        assert far.quantity == 5

    def test_mine_transistor(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=3)
        _add_ore(state, Position(0, 1, 0), 2, kind=OreKind.TRANSISTOR)

        outcome = _apply(
            validator, state, sign_action(agent, ActionType.MINE, {"ore": "transistor", "source": "ore"}), events
        )

        assert isinstance(outcome, Accepted)
        assert agent.transistors == 2
        assert state.agent_qi(agent.id) == 2
        assert events.of_kind("ore_gained")[0].payload["amount"] == 2

    def test_mine_recharge(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=1)
        well = _add_recharge(state, Position(0, 1, 0), 4)

        outcome = _apply(
            validator, state, sign_action(agent, ActionType.MINE, {"ore": "qi", "source": "recharge"}), events
        )

        assert isinstance(outcome, Accepted)
        assert state.agent_qi(agent.id) == 3
        assert well.charge == 1
        assert len(events.of_kind("recharge_docked")) == 1

    def test_recharge_only_yields_qi(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=1)
        _add_recharge(state, Position(0, 1, 0), 4)

        outcome = _apply(
            validator,
            state,
            sign_action(agent, ActionType.MINE, {"ore": "transistor", "source": "recharge"}),
            events,
        )

        assert _code(outcome) == "invalid_payload"


class TestConstruction:
    def test_build_and_occupied(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)

        first = _apply(validator, state, sign_action(agent, ActionType.BUILD, {"kind": "basic"}), events)
        second = _apply(validator, state, sign_action(agent, ActionType.BUILD, {"kind": "basic"}), events)

        assert isinstance(first, Accepted)
        assert _code(second) == "structure_space_occupied"
        structure = state.structures[1]
        assert structure.kind == StructureKind.BASIC
        assert structure.owner == agent.id
        assert structure.position == agent.position

    def test_place_block_adjacent(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)

        ok = _apply(validator, state, sign_action(agent, ActionType.PLACE_BLOCK, {"dx": 0, "dy": 0, "dz": 1}), events)
        far = _apply(validator, state, sign_action(agent, ActionType.PLACE_BLOCK, {"dx": 2, "dy": 0, "dz": 0}), events)

        assert isinstance(ok, Accepted)
        assert state.structures[1].kind == StructureKind.BLOCK
        assert state.structures[1].position == Position(0, 0, 1)
        assert _code(far) == "invalid_payload"

    def test_write_program_needs_transistor(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        agent = spawn_agent(qi=5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.WRITE_PROGRAM, {"program": "blink"}), events)

        assert _code(outcome) == "insufficient_ore"

    def test_write_program_consumes_transistor(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        agent = spawn_agent(qi=5)
        agent.transistors = 1

        outcome = _apply(validator, state, sign_action(agent, ActionType.WRITE_PROGRAM, {"program": "blink"}), events)

        assert isinstance(outcome, Accepted)
        assert agent.transistors == 0
        assert state.structures[1].kind == StructureKind.PROGRAMMABLE
        assert state.structures[1].program == "blink"

    def test_program_too_large(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)
        agent.transistors = 1

        outcome = _apply(
            validator, state, sign_action(agent, ActionType.WRITE_PROGRAM, {"program": "x" * 1025}), events
        )

        assert _code(outcome) == "program_too_large"
        assert agent.transistors == 1


class TestZones:
    def test_claim_zone(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        agent = spawn_agent(qi=5)

        outcome = _apply(validator, state, sign_action(agent, ActionType.CLAIM_ZONE, {"radius": 1}), events)

        assert isinstance(outcome, Accepted)
        zone = state.zones[1]
        assert zone.claimant == agent.id
        assert zone.members == [agent.id]
        assert zone.min_corner == Position(-1, -1, -1)
        assert zone.max_corner == Position(1, 1, 1)

    def test_claim_overlap_and_bounds(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        owner = spawn_agent(qi=5)
        rival = spawn_agent(qi=5, position=Position(5, 0, 0))
        edge = spawn_agent(qi=5, position=Position(16, 8, 0))
        _apply(validator, state, sign_action(owner, ActionType.CLAIM_ZONE, {"radius": 1}), events)

        clear = _apply(validator, state, sign_action(rival, ActionType.CLAIM_ZONE, {"radius": 3}), events)
        assert isinstance(clear, Accepted)

        point = _apply(validator, state, sign_action(edge, ActionType.CLAIM_ZONE, {"radius": 0}), events)
        assert isinstance(point, Accepted)

        outside = _apply(validator, state, sign_action(edge, ActionType.CLAIM_ZONE, {"radius": 1}), events)
        assert _code(outside) == "out_of_bounds"

    def test_overlapping_claim_rejected(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        owner = spawn_agent(qi=5)
        rival = spawn_agent(qi=5, position=Position(5, 0, 0))
        _apply(validator, state, sign_action(owner, ActionType.CLAIM_ZONE, {"radius": 1}), events)

        outcome = _apply(validator, state, sign_action(rival, ActionType.CLAIM_ZONE, {"radius": 4}), events)

        assert _code(outcome) == "zone_overlap"

    def test_join_requires_standing_inside(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        owner = spawn_agent(qi=5)
        outsider = spawn_agent(qi=5, position=Position(5, 0, 0))
        insider = spawn_agent(qi=5, position=Position(1, 0, 0))
        _apply(validator, state, sign_action(owner, ActionType.CLAIM_ZONE, {"radius": 1}), events)

        denied = _apply(validator, state, sign_action(outsider, ActionType.JOIN_ZONE, {"zone_id": 1}), events)
        joined = _apply(validator, state, sign_action(insider, ActionType.JOIN_ZONE, {"zone_id": 1}), events)
        again = _apply(validator, state, sign_action(insider, ActionType.JOIN_ZONE, {"zone_id": 1}), events)

        assert _code(denied) == "zone_permission_denied"
        assert isinstance(joined, Accepted)
        assert _code(again) == "already_zone_member"
        assert state.zones[1].members == [owner.id, insider.id]

    def test_leave_zone(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        owner = spawn_agent(qi=5)
        member = spawn_agent(qi=5, position=Position(1, 0, 0))
        _apply(validator, state, sign_action(owner, ActionType.CLAIM_ZONE, {"radius": 1}), events)
        _apply(validator, state, sign_action(member, ActionType.JOIN_ZONE, {"zone_id": 1}), events)

        claimant_leave = _apply(validator, state, sign_action(owner, ActionType.LEAVE_ZONE, {"zone_id": 1}), events)
        member_leave = _apply(validator, state, sign_action(member, ActionType.LEAVE_ZONE, {"zone_id": 1}), events)
        not_member = _apply(validator, state, sign_action(member, ActionType.LEAVE_ZONE, {"zone_id": 1}), events)

        assert _code(claimant_leave) == "zone_permission_denied"
        assert isinstance(member_leave, Accepted)
        assert _code(not_member) == "not_zone_member"

    def test_expand_zone(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        owner = spawn_agent(qi=5)
        other = spawn_agent(qi=5, position=Position(1, 0, 0))
        _apply(validator, state, sign_action(owner, ActionType.CLAIM_ZONE, {"radius": 1}), events)

        denied = _apply(validator, state, sign_action(other, ActionType.EXPAND_ZONE, {"zone_id": 1}), events)
        grown = _apply(validator, state, sign_action(owner, ActionType.EXPAND_ZONE, {"zone_id": 1, "amount": 1}), events)
        missing = _apply(validator, state, sign_action(owner, ActionType.EXPAND_ZONE, {"zone_id": 9}), events)

        assert _code(denied) == "not_zone_claimant"
        assert isinstance(grown, Accepted)
        assert state.zones[1].min_corner == Position(-2, -2, -2)
        assert state.zones[1].max_corner == Position(2, 2, 2)
        assert _code(missing) == "zone_not_found"

    def test_build_in_foreign_zone_denied(
        self, validator, state, events, spawn_agent: Spawn, sign_action: Sign
    ) -> None:
        owner = spawn_agent(qi=5)
        visitor = spawn_agent(qi=5, position=Position(1, 0, 0))
        _apply(validator, state, sign_action(owner, ActionType.CLAIM_ZONE, {"radius": 1}), events)

        outcome = _apply(validator, state, sign_action(visitor, ActionType.BUILD, {"kind": "basic"}), events)

        assert _code(outcome) == "zone_permission_denied"
        assert state.structures == {}


class TestReproduction:
    def test_reproduce(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        parent = spawn_agent(qi=10)
        parent.memory = ["a", "b", "c", "d"]

        outcome = _apply(validator, state, sign_action(parent, ActionType.REPRODUCE), events)

        assert isinstance(outcome, Accepted)
        child = state.agents[2]
        # 10 - 1 fee - 2 cost = 7; child gets floor(7 / 2)
        assert state.agent_qi(parent.id) == 4
        assert state.agent_qi(child.id) == 3
        assert child.parent_id == parent.id
        assert child.status == AgentStatus.SPAWNING
        assert child.position == Position(-1, -1, -1)
        assert child.memory == ["b", "c", "d"]
        assert parent.offspring == [child.id]
        assert len(events.of_kind("agent_reproduced")) == 1

    def test_below_threshold(self, validator, state, events, spawn_agent: Spawn, sign_action: Sign) -> None:
        parent = spawn_agent(qi=5)

        outcome = _apply(validator, state, sign_action(parent, ActionType.REPRODUCE), events)

        assert _code(outcome) == "reproduction_threshold"
        assert len(state.agents) == 1
        assert state.agent_qi(parent.id) == 5
