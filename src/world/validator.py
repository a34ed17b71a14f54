"""ActionValidator - the only way an agent action changes the world.

Checks run in a fixed order and stop at the first failure:

    agent exists and is alive
    (free actions stop here: scan, inspect and idle always succeed)
    signature -> nonce -> Qi for the fee -> type preconditions

A rejected action leaves the state untouched and produces exactly one
``action_rejected`` event. It does not consume the nonce. An accepted write
action debits its fee into the ambient pool (``qi_spent``), applies its
effect, advances the agent's nonce by one and emits its domain events.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from ..config_schema import AppConfig
from .actions import (
    Accepted,
    Action,
    ActionOutcome,
    ActionType,
    ClaimZonePayload,
    ExpandZonePayload,
    HarvestPayload,
    InspectPayload,
    MinePayload,
    OffsetPayload,
    Rejected,
    WriteProgramPayload,
    ZoneRefPayload,
)
from .errors import ErrorCode, ErrorResponse, rejection
from .lifecycle import AgentLifecycle
from .logger import TickEvents
from .state import (
    Agent,
    OreKind,
    OreNode,
    Position,
    RechargeNode,
    Structure,
    StructureKind,
    WorldState,
    Zone,
)
from .wallets import verify_signature

logger = logging.getLogger(__name__)


class ActionValidator:
    """Validates one action at a time against a WorldState and applies it."""

    def __init__(self, config: AppConfig, lifecycle: AgentLifecycle | None = None) -> None:
        self.config = config
        self.lifecycle = lifecycle or AgentLifecycle(config)

    def validate_and_apply(
        self,
        state: WorldState,
        action: Action,
        events: TickEvents,
    ) -> ActionOutcome:
        """Validate ``action`` and, if legal, apply it to ``state`` in place.

        Args:
            state: World to check against and mutate
            action: Signed action
            events: Buffer receiving the events this action produces
        """
        error = self._precheck(state, action)
        if error is not None:
            return self._reject(state, action, error, events)

        agent = state.agents[action.agent_id]
        if action.is_free:
            payload = self._payload(action)
            if isinstance(payload, ErrorResponse):
                return self._reject(state, action, payload, events)
            return Accepted(action=action, qi_spent=0, data=self._read(state, agent, action, payload, events))

        error = self._check_authorization(state, agent, action)
        if error is None:
            payload = self._payload(action)
            if isinstance(payload, ErrorResponse):
                error = payload
            else:
                error = self._dispatch(state, agent, action, payload, events)
        if error is not None:
            rejected = self._reject(state, action, error, events)
            if error.code == ErrorCode.INSUFFICIENT_QI.value and state.agent_qi(agent.id) == 0:
                self.lifecycle.stall(state, agent, events)
            return rejected
        return Accepted(action=action, qi_spent=action.qi_cost)

    # ===== CHECKS =====

    def _precheck(self, state: WorldState, action: Action) -> ErrorResponse | None:
        agent = state.agent(action.agent_id)
        if agent is None:
            return rejection(ErrorCode.AGENT_NOT_FOUND, f"agent {action.agent_id} not found")
        if not agent.alive:
            return rejection(ErrorCode.AGENT_DEAD, f"agent {action.agent_id} is dead")
        return None

    def _payload(self, action: Action) -> Any:
        try:
            return action.validated_payload()
        except ValidationError as e:
            return rejection(
                ErrorCode.INVALID_PAYLOAD,
                f"invalid {action.action_type.value} payload: {e.errors()[0]['msg']}",
            )

    def _check_authorization(
        self,
        state: WorldState,
        agent: Agent,
        action: Action,
    ) -> ErrorResponse | None:
        wallet = state.wallets.get(agent.wallet)
        public_key = wallet.public_key if wallet else None
        if public_key is None or not action.signature or not verify_signature(
            public_key, action.signing_bytes(), action.signature
        ):
            return rejection(ErrorCode.INVALID_SIGNATURE, "signature does not match the owning wallet")

        expected = agent.last_nonce + 1
        if action.nonce < expected:
            return rejection(
                ErrorCode.STALE_NONCE,
                f"nonce {action.nonce} already used (expected {expected})",
                expected=expected,
                got=action.nonce,
            )
        if action.nonce > expected:
            return rejection(
                ErrorCode.NONCE_GAP,
                f"nonce {action.nonce} skips ahead (expected {expected})",
                expected=expected,
                got=action.nonce,
            )

        qi = state.agent_qi(agent.id)
        if qi < action.qi_cost:
            return rejection(
                ErrorCode.INSUFFICIENT_QI,
                f"insufficient qi: have {qi}, need {action.qi_cost}",
                required=action.qi_cost,
                available=qi,
            )
        return None

    def _dispatch(
        self,
        state: WorldState,
        agent: Agent,
        action: Action,
        payload: Any,
        events: TickEvents,
    ) -> ErrorResponse | None:
        kind = action.action_type
        if kind == ActionType.MOVE:
            return self._move(state, agent, action, payload, events)
        if kind == ActionType.HARVEST_QI_ORE:
            return self._harvest(state, agent, action, payload, events)
        if kind == ActionType.MINE:
            return self._mine(state, agent, action, payload, events)
        if kind == ActionType.BUILD:
            return self._build(state, agent, action, agent.position, StructureKind.BASIC, None, events)
        if kind == ActionType.PLACE_BLOCK:
            return self._place_block(state, agent, action, payload, events)
        if kind == ActionType.WRITE_PROGRAM:
            return self._write_program(state, agent, action, payload, events)
        if kind == ActionType.CLAIM_ZONE:
            return self._claim_zone(state, agent, action, payload, events)
        if kind == ActionType.JOIN_ZONE:
            return self._join_zone(state, agent, action, payload, events)
        if kind == ActionType.LEAVE_ZONE:
            return self._leave_zone(state, agent, action, payload, events)
        if kind == ActionType.EXPAND_ZONE:
            return self._expand_zone(state, agent, action, payload, events)
        if kind == ActionType.REPRODUCE:
            return self._reproduce(state, agent, action, events)
        return rejection(ErrorCode.INVALID_PAYLOAD, f"unsupported action {kind.value}")

    # ===== COMMIT HELPERS =====

    def _charge(self, state: WorldState, agent: Agent, action: Action, events: TickEvents) -> None:
        """Debit the fee and consume the nonce. Called once all checks pass."""
        if action.qi_cost:
            balance = state.ledger.spend(agent.principal, action.qi_cost, "action_fee")
            events.emit(
                "qi_spent",
                agent_id=agent.id,
                amount=action.qi_cost,
                action=action.action_type.value,
                balance=balance,
            )
        agent.last_nonce = action.nonce

    def _reject(
        self, state: WorldState, action: Action, error: ErrorResponse, events: TickEvents
    ) -> Rejected:
        events.emit(
            "action_rejected",
            agent_id=action.agent_id,
            action=action.action_type.value,
            nonce=action.nonce,
            code=error.code,
            message=error.message,
        )
        logger.info(
            "Rejected %s for agent %d: %s", action.action_type.value, action.agent_id, error.message
        )
        return Rejected(action=action, error=error)

    # ===== READ ACTIONS =====

    def _read(
        self,
        state: WorldState,
        agent: Agent,
        action: Action,
        payload: Any,
        events: TickEvents,
    ) -> dict[str, Any] | None:
        if action.action_type == ActionType.SCAN:
            observation = state.observe(agent.id, self.config.world.scan_range, self.config.world.zone_size)
            events.emit(
                "scan_report",
                agent_id=agent.id,
                ore_nodes=[n["id"] for n in observation["nearby_ore_nodes"]],
                recharge_nodes=[n["id"] for n in observation["nearby_recharge_nodes"]],
                structures=[s["id"] for s in observation["nearby_structures"]],
                agents=[a["id"] for a in observation["nearby_agents"]],
            )
            return dict(observation)
        if action.action_type == ActionType.INSPECT:
            assert isinstance(payload, InspectPayload)
            target_id = payload.agent_id if payload.agent_id is not None else agent.id
            target = state.agents.get(target_id)
            if target is None:
                data: dict[str, Any] = {"agent_id": target_id, "found": False}
            else:
                data = target.to_dict()
                data["qi"] = state.agent_qi(target_id)
                data["found"] = True
            events.emit("inspect_report", agent_id=agent.id, target_id=target_id, found=data["found"])
            return data
        return None

    # ===== MOVEMENT =====

    def _move(
        self, state: WorldState, agent: Agent, action: Action, payload: OffsetPayload, events: TickEvents
    ) -> ErrorResponse | None:
        world = self.config.world
        distance = max(abs(payload.dx), abs(payload.dy), abs(payload.dz))
        if distance == 0:
            return rejection(ErrorCode.INVALID_PAYLOAD, "move offset must be non-zero")
        if distance > world.max_move_radius:
            return rejection(
                ErrorCode.MOVE_OUT_OF_RANGE,
                f"move of {distance} exceeds radius {world.max_move_radius}",
                distance=distance,
                max_radius=world.max_move_radius,
            )
        target = agent.position.offset(payload.dx, payload.dy, payload.dz)
        if not target.in_bounds(world.bounds):
            return rejection(ErrorCode.OUT_OF_BOUNDS, f"{target} is outside the world")
        occupant = state.agent_at(target)
        if occupant is not None:
            return rejection(
                ErrorCode.POSITION_OCCUPIED, f"{target} is occupied by agent {occupant.id}", occupant=occupant.id
            )

        self._charge(state, agent, action, events)
        origin = agent.position
        agent.position = target
        events.emit("agent_moved", agent_id=agent.id, origin=origin.to_dict(), target=target.to_dict())
        return None

    # ===== RESOURCES =====

    def _select_ore_node(
        self, state: WorldState, agent: Agent, kind: OreKind, node_id: int | None
    ) -> OreNode | ErrorResponse:
        reach = self.config.world.harvest_range
        if node_id is not None:
            node = state.ore_nodes.get(node_id)
            if node is None or node.kind != kind or not agent.position.within_range(node.position, reach):
                return rejection(ErrorCode.NO_SOURCE_IN_RANGE, f"no {kind.value} ore node {node_id} in range")
            if node.quantity <= 0:
                return rejection(ErrorCode.SOURCE_DEPLETED, f"ore node {node_id} is empty", node_id=node_id)
            return node
        found = state.nearest_ore_node(agent.position, kind, reach)
        if found is not None:
            return found
        if any(
            n.kind == kind and agent.position.within_range(n.position, reach)
            for n in state.ore_nodes.values()
        ):
            return rejection(ErrorCode.SOURCE_DEPLETED, f"every {kind.value} ore node in range is empty")
        return rejection(ErrorCode.NO_SOURCE_IN_RANGE, f"no {kind.value} ore node within {reach}")

    def _select_recharge_node(
        self, state: WorldState, agent: Agent, node_id: int | None
    ) -> RechargeNode | ErrorResponse:
        reach = self.config.world.harvest_range
        if node_id is not None:
            node = state.recharge_nodes.get(node_id)
            if node is None or not agent.position.within_range(node.position, reach):
                return rejection(ErrorCode.NO_SOURCE_IN_RANGE, f"no recharge node {node_id} in range")
            if node.charge <= 0:
                return rejection(ErrorCode.SOURCE_DEPLETED, f"recharge node {node_id} is empty", node_id=node_id)
            return node
        found = state.nearest_recharge_node(agent.position, reach)
        if found is not None:
            return found
        if any(agent.position.within_range(n.position, reach) for n in state.recharge_nodes.values()):
            return rejection(ErrorCode.SOURCE_DEPLETED, "every recharge node in range is empty")
        return rejection(ErrorCode.NO_SOURCE_IN_RANGE, f"no recharge node within {reach}")

    def _take_ore(
        self, state: WorldState, agent: Agent, action: Action, node: OreNode, events: TickEvents
    ) -> None:
        self._charge(state, agent, action, events)
        taken = min(node.quantity, self.config.world.harvest_per_action)
        node.quantity -= taken
        if node.kind == OreKind.QI:
            balance = state.ledger.collect_from_world(agent.principal, taken, "harvested")
            events.emit("qi_gained", agent_id=agent.id, amount=taken, source="ore", node_id=node.id, balance=balance)
        else:
            agent.transistors += taken
            events.emit("ore_gained", agent_id=agent.id, ore=node.kind.value, amount=taken, node_id=node.id)
        events.emit("ore_node_harvested", node_id=node.id, agent_id=agent.id, amount=taken, remaining=node.quantity)
        if node.quantity == 0:
            events.emit("ore_node_drained", node_id=node.id)

    def _harvest(
        self, state: WorldState, agent: Agent, action: Action, payload: HarvestPayload, events: TickEvents
    ) -> ErrorResponse | None:
        node = self._select_ore_node(state, agent, OreKind.QI, payload.node_id)
        if isinstance(node, ErrorResponse):
            return node
        self._take_ore(state, agent, action, node, events)
        return None

    def _mine(
        self, state: WorldState, agent: Agent, action: Action, payload: MinePayload, events: TickEvents
    ) -> ErrorResponse | None:
        if payload.source == "ore":
            node = self._select_ore_node(state, agent, OreKind(payload.ore), payload.node_id)
            if isinstance(node, ErrorResponse):
                return node
            self._take_ore(state, agent, action, node, events)
            return None

        if payload.ore != "qi":
            return rejection(ErrorCode.INVALID_PAYLOAD, "recharge nodes only yield qi")
        rnode = self._select_recharge_node(state, agent, payload.node_id)
        if isinstance(rnode, ErrorResponse):
            return rnode
        self._charge(state, agent, action, events)
        taken = min(rnode.charge, self.config.world.harvest_per_action)
        rnode.charge -= taken
        balance = state.ledger.collect_from_world(agent.principal, taken, "recharged")
        events.emit("qi_gained", agent_id=agent.id, amount=taken, source="recharge", node_id=rnode.id, balance=balance)
        events.emit("recharge_docked", node_id=rnode.id, agent_id=agent.id, amount=taken, remaining=rnode.charge)
        return None

    # ===== CONSTRUCTION =====

    def _site_error(self, state: WorldState, agent: Agent, site: Position) -> ErrorResponse | None:
        if not site.in_bounds(self.config.world.bounds):
            return rejection(ErrorCode.OUT_OF_BOUNDS, f"{site} is outside the world")
        existing = state.structure_at(site)
        if existing is not None:
            return rejection(
                ErrorCode.STRUCTURE_SPACE_OCCUPIED, f"structure {existing.id} already at {site}", structure_id=existing.id
            )
        zone = state.zone_containing(site)
        if zone is not None and agent.id not in zone.members:
            return rejection(
                ErrorCode.ZONE_PERMISSION_DENIED, f"{site} lies in zone {zone.id}; join it first", zone_id=zone.id
            )
        return None

    def _build(
        self,
        state: WorldState,
        agent: Agent,
        action: Action,
        site: Position,
        kind: StructureKind,
        program: str | None,
        events: TickEvents,
    ) -> ErrorResponse | None:
        error = self._site_error(state, agent, site)
        if error is not None:
            return error
        self._charge(state, agent, action, events)
        if kind == StructureKind.PROGRAMMABLE:
            agent.transistors -= 1
        structure = Structure(
            id=state.allocate_structure_id(),
            position=site,
            kind=kind,
            owner=agent.id,
            program=program,
            built_tick=state.tick,
        )
        state.structures[structure.id] = structure
        events.emit(
            "structure_built",
            structure_id=structure.id,
            agent_id=agent.id,
            kind=kind.value,
            position=site.to_dict(),
        )
        return None

    def _place_block(
        self, state: WorldState, agent: Agent, action: Action, payload: OffsetPayload, events: TickEvents
    ) -> ErrorResponse | None:
        if max(abs(payload.dx), abs(payload.dy), abs(payload.dz)) != 1:
            return rejection(ErrorCode.INVALID_PAYLOAD, "place_block target must be adjacent")
        site = agent.position.offset(payload.dx, payload.dy, payload.dz)
        return self._build(state, agent, action, site, StructureKind.BLOCK, None, events)

    def _write_program(
        self, state: WorldState, agent: Agent, action: Action, payload: WriteProgramPayload, events: TickEvents
    ) -> ErrorResponse | None:
        limit = self.config.lifecycle.max_program_bytes
        size = len(payload.program.encode())
        if size > limit:
            return rejection(ErrorCode.PROGRAM_TOO_LARGE, f"program is {size} bytes, limit {limit}", size=size, limit=limit)
        if agent.transistors < 1:
            return rejection(ErrorCode.INSUFFICIENT_ORE, "programmable structures need 1 transistor", required=1, available=0)
        return self._build(state, agent, action, agent.position, StructureKind.PROGRAMMABLE, payload.program, events)

    # ===== ZONES =====

    def _zone_region_error(
        self, state: WorldState, lo: Position, hi: Position, ignore: int | None = None
    ) -> ErrorResponse | None:
        bounds = self.config.world.bounds
        if not (lo.in_bounds(bounds) and hi.in_bounds(bounds)):
            return rejection(ErrorCode.OUT_OF_BOUNDS, "zone would extend outside the world")
        for zone_id, zone in sorted(state.zones.items()):
            if zone_id != ignore and zone.overlaps(lo, hi):
                return rejection(ErrorCode.ZONE_OVERLAP, f"region overlaps zone {zone_id}", zone_id=zone_id)
        return None

    def _claim_zone(
        self, state: WorldState, agent: Agent, action: Action, payload: ClaimZonePayload, events: TickEvents
    ) -> ErrorResponse | None:
        r = payload.radius if payload.radius is not None else self.config.lifecycle.zone_claim_radius
        lo = agent.position.offset(-r, -r, -r)
        hi = agent.position.offset(r, r, r)
        error = self._zone_region_error(state, lo, hi)
        if error is not None:
            return error
        self._charge(state, agent, action, events)
        zone = Zone(id=state.allocate_zone_id(), claimant=agent.id, min_corner=lo, max_corner=hi, members=[agent.id])
        state.zones[zone.id] = zone
        events.emit(
            "zone_claimed", zone_id=zone.id, agent_id=agent.id, min_corner=lo.to_dict(), max_corner=hi.to_dict()
        )
        return None

    def _zone(self, state: WorldState, zone_id: int) -> Zone | ErrorResponse:
        zone = state.zones.get(zone_id)
        if zone is None:
            return rejection(ErrorCode.ZONE_NOT_FOUND, f"zone {zone_id} not found")
        return zone

    def _join_zone(
        self, state: WorldState, agent: Agent, action: Action, payload: ZoneRefPayload, events: TickEvents
    ) -> ErrorResponse | None:
        zone = self._zone(state, payload.zone_id)
        if isinstance(zone, ErrorResponse):
            return zone
        if agent.id in zone.members:
            return rejection(ErrorCode.ALREADY_ZONE_MEMBER, f"already a member of zone {zone.id}")
        if not zone.contains(agent.position):
            return rejection(ErrorCode.ZONE_PERMISSION_DENIED, f"must stand inside zone {zone.id} to join")
        self._charge(state, agent, action, events)
        zone.members = sorted(zone.members + [agent.id])
        events.emit("zone_joined", zone_id=zone.id, agent_id=agent.id)
        return None

    def _leave_zone(
        self, state: WorldState, agent: Agent, action: Action, payload: ZoneRefPayload, events: TickEvents
    ) -> ErrorResponse | None:
        zone = self._zone(state, payload.zone_id)
        if isinstance(zone, ErrorResponse):
            return zone
        if agent.id not in zone.members:
            return rejection(ErrorCode.NOT_ZONE_MEMBER, f"not a member of zone {zone.id}")
        if zone.claimant == agent.id:
            return rejection(ErrorCode.ZONE_PERMISSION_DENIED, f"the claimant cannot leave zone {zone.id}")
        self._charge(state, agent, action, events)
        zone.members = [m for m in zone.members if m != agent.id]
        events.emit("zone_left", zone_id=zone.id, agent_id=agent.id)
        return None

    def _expand_zone(
        self, state: WorldState, agent: Agent, action: Action, payload: ExpandZonePayload, events: TickEvents
    ) -> ErrorResponse | None:
        zone = self._zone(state, payload.zone_id)
        if isinstance(zone, ErrorResponse):
            return zone
        if zone.claimant != agent.id:
            return rejection(ErrorCode.NOT_ZONE_CLAIMANT, f"only the claimant can expand zone {zone.id}")
        n = payload.amount
        lo = zone.min_corner.offset(-n, -n, -n)
        hi = zone.max_corner.offset(n, n, n)
        error = self._zone_region_error(state, lo, hi, ignore=zone.id)
        if error is not None:
            return error
        self._charge(state, agent, action, events)
        zone.min_corner, zone.max_corner = lo, hi
        events.emit(
            "zone_expanded", zone_id=zone.id, agent_id=agent.id, min_corner=lo.to_dict(), max_corner=hi.to_dict()
        )
        return None

    # ===== REPRODUCTION =====

    def _reproduce(
        self, state: WorldState, agent: Agent, action: Action, events: TickEvents
    ) -> ErrorResponse | None:
        rules = self.config.lifecycle
        after_fee = state.agent_qi(agent.id) - action.qi_cost
        needed = max(rules.reproduction_threshold, rules.reproduction_cost)
        if after_fee < needed:
            return rejection(
                ErrorCode.REPRODUCTION_THRESHOLD,
                f"reproduction needs {needed} Qi after the fee, have {after_fee}",
                required=needed,
                available=after_fee,
            )
        site = self.lifecycle.free_neighbour(state, agent.position)
        if site is None:
            return rejection(ErrorCode.POSITION_OCCUPIED, "no free cell next to the parent")
        self._charge(state, agent, action, events)
        self.lifecycle.reproduce(state, agent, site, events)
        return None
