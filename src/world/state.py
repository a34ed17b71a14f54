"""WorldState - the canonical, explicitly owned snapshot of the world.

Holds agents, ore and recharge nodes, structures, zones, wallets (public
part), the Qi ledger and the tick counter. Nothing here is global: the tick
engine receives a WorldState, works on a copy and returns the new value.

Cross references (structure owner, zone claimant/members, agent lineage)
are integer IDs resolved through the dicts below, never object references,
so a state serializes to plain JSON and deep-copies cleanly.
"""

from __future__ import annotations

__all__ = [
    "Position",
    "AgentStatus",
    "OreKind",
    "StructureKind",
    "Wallet",
    "Agent",
    "OreNode",
    "RechargeNode",
    "Structure",
    "Zone",
    "Observation",
    "WorldState",
]

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypedDict

from .ledger import Ledger, agent_principal, AGENT_PREFIX


@dataclass(frozen=True, order=True)
class Position:
    """Integer voxel coordinate."""

    x: int = 0
    y: int = 0
    z: int = 0

    @classmethod
    def origin(cls) -> "Position":
        return cls(0, 0, 0)

    @classmethod
    def parse(cls, text: str) -> "Position":
        """Parse ``"x,y,z"``."""
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 3:
            raise ValueError(f"position needs three coordinates, got {text!r}")
        return cls(int(parts[0]), int(parts[1]), int(parts[2]))

    def offset(self, dx: int, dy: int, dz: int) -> "Position":
        return Position(self.x + dx, self.y + dy, self.z + dz)

    def chebyshev(self, other: "Position") -> int:
        return max(abs(self.x - other.x), abs(self.y - other.y), abs(self.z - other.z))

    def manhattan(self, other: "Position") -> int:
        return abs(self.x - other.x) + abs(self.y - other.y) + abs(self.z - other.z)

    def within_range(self, other: "Position", distance: int) -> bool:
        return self.chebyshev(other) <= distance

    def in_bounds(self, bounds: int) -> bool:
        return max(abs(self.x), abs(self.y), abs(self.z)) <= bounds

    def zone_cell(self, zone_size: int) -> tuple[int, int, int]:
        return (self.x // zone_size, self.y // zone_size, self.z // zone_size)

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        return cls(int(data["x"]), int(data["y"]), int(data["z"]))

    def __str__(self) -> str:
        return f"({self.x}, {self.y}, {self.z})"


class AgentStatus(str, Enum):
    SPAWNING = "spawning"
    ACTIVE = "active"
    STALLED = "stalled"
    DEAD = "dead"


class OreKind(str, Enum):
    QI = "qi"
    TRANSISTOR = "transistor"


class StructureKind(str, Enum):
    BASIC = "basic"
    BLOCK = "block"
    PROGRAMMABLE = "programmable"


@dataclass
class Wallet:
    """Public wallet record. Private keys live only in WalletStore."""

    address: str
    public_key: str
    mining_nonce: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "public_key": self.public_key,
            "mining_nonce": self.mining_nonce,
        }


@dataclass
class Agent:
    """An agent. Its Qi balance lives in the ledger under agent:<id>."""

    id: int
    name: str
    wallet: str
    position: Position
    max_age: int
    age: int = 0
    status: AgentStatus = AgentStatus.SPAWNING
    last_nonce: int = 0
    transistors: int = 0
    memory: list[str] = field(default_factory=list)
    parent_id: int | None = None
    offspring: list[int] = field(default_factory=list)
    born_tick: int = 0
    death_reason: str | None = None

    @property
    def alive(self) -> bool:
        return self.status != AgentStatus.DEAD

    @property
    def principal(self) -> str:
        return agent_principal(self.id)

    def remember(self, note: str, limit: int) -> None:
        """Append a note, keeping only the most recent ``limit``."""
        self.memory.append(note)
        if len(self.memory) > limit:
            del self.memory[: len(self.memory) - limit]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "wallet": self.wallet,
            "position": self.position.to_dict(),
            "max_age": self.max_age,
            "age": self.age,
            "status": self.status.value,
            "last_nonce": self.last_nonce,
            "transistors": self.transistors,
            "memory": list(self.memory),
            "parent_id": self.parent_id,
            "offspring": list(self.offspring),
            "born_tick": self.born_tick,
            "death_reason": self.death_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Agent":
        return cls(
            id=int(data["id"]),
            name=str(data["name"]),
            wallet=str(data["wallet"]),
            position=Position.from_dict(data["position"]),
            max_age=int(data["max_age"]),
            age=int(data.get("age", 0)),
            status=AgentStatus(data.get("status", AgentStatus.ACTIVE.value)),
            last_nonce=int(data.get("last_nonce", 0)),
            transistors=int(data.get("transistors", 0)),
            memory=[str(m) for m in data.get("memory", [])],
            parent_id=data.get("parent_id"),
            offspring=[int(c) for c in data.get("offspring", [])],
            born_tick=int(data.get("born_tick", 0)),
            death_reason=data.get("death_reason"),
        )


@dataclass
class OreNode:
    """A discrete deposit. Quantity only grows through infusion."""

    id: int
    position: Position
    kind: OreKind
    quantity: int
    decay_per_tick: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position.to_dict(),
            "kind": self.kind.value,
            "quantity": self.quantity,
            "decay_per_tick": self.decay_per_tick,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OreNode":
        return cls(
            id=int(data["id"]),
            position=Position.from_dict(data["position"]),
            kind=OreKind(data["kind"]),
            quantity=int(data["quantity"]),
            decay_per_tick=int(data.get("decay_per_tick", 0)),
        )


@dataclass
class RechargeNode:
    """A regenerating Qi well."""

    id: int
    position: Position
    capacity: int
    charge: int
    regen_per_tick: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position.to_dict(),
            "capacity": self.capacity,
            "charge": self.charge,
            "regen_per_tick": self.regen_per_tick,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RechargeNode":
        return cls(
            id=int(data["id"]),
            position=Position.from_dict(data["position"]),
            capacity=int(data["capacity"]),
            charge=int(data["charge"]),
            regen_per_tick=int(data["regen_per_tick"]),
        )


@dataclass
class Structure:
    id: int
    position: Position
    kind: StructureKind
    owner: int
    program: str | None = None
    built_tick: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position.to_dict(),
            "kind": self.kind.value,
            "owner": self.owner,
            "program": self.program,
            "built_tick": self.built_tick,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Structure":
        return cls(
            id=int(data["id"]),
            position=Position.from_dict(data["position"]),
            kind=StructureKind(data["kind"]),
            owner=int(data["owner"]),
            program=data.get("program"),
            built_tick=int(data.get("built_tick", 0)),
        )


@dataclass
class Zone:
    """Axis-aligned region with inclusive corners."""

    id: int
    claimant: int
    min_corner: Position
    max_corner: Position
    members: list[int] = field(default_factory=list)

    def contains(self, position: Position) -> bool:
        return (
            self.min_corner.x <= position.x <= self.max_corner.x
            and self.min_corner.y <= position.y <= self.max_corner.y
            and self.min_corner.z <= position.z <= self.max_corner.z
        )

    def overlaps(self, lo: Position, hi: Position) -> bool:
        return not (
            hi.x < self.min_corner.x or lo.x > self.max_corner.x
            or hi.y < self.min_corner.y or lo.y > self.max_corner.y
            or hi.z < self.min_corner.z or lo.z > self.max_corner.z
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "claimant": self.claimant,
            "min_corner": self.min_corner.to_dict(),
            "max_corner": self.max_corner.to_dict(),
            "members": sorted(self.members),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Zone":
        return cls(
            id=int(data["id"]),
            claimant=int(data["claimant"]),
            min_corner=Position.from_dict(data["min_corner"]),
            max_corner=Position.from_dict(data["max_corner"]),
            members=sorted(int(m) for m in data.get("members", [])),
        )


class Observation(TypedDict):
    """What a brain sees: the agent's own state plus a free local scan."""

    agent_id: int
    tick: int
    position: dict[str, int]
    qi: int
    transistors: int
    age: int
    max_age: int
    status: str
    nearby_ore_nodes: list[dict[str, Any]]
    nearby_recharge_nodes: list[dict[str, Any]]
    nearby_structures: list[dict[str, Any]]
    nearby_agents: list[dict[str, Any]]
    zones: list[int]
    zone_cell: list[int]
    memory: list[str]


@dataclass
class WorldState:
    """The world. Dict-keyed by integer IDs; iteration is always by sorted ID."""

    tick: int = 0
    ledger: Ledger = field(default_factory=Ledger)
    wallets: dict[str, Wallet] = field(default_factory=dict)
    agents: dict[int, Agent] = field(default_factory=dict)
    ore_nodes: dict[int, OreNode] = field(default_factory=dict)
    recharge_nodes: dict[int, RechargeNode] = field(default_factory=dict)
    structures: dict[int, Structure] = field(default_factory=dict)
    zones: dict[int, Zone] = field(default_factory=dict)
    next_agent_id: int = 1
    next_node_id: int = 1
    next_structure_id: int = 1
    next_zone_id: int = 1

    # ===== IDS =====

    def allocate_agent_id(self) -> int:
        agent_id = self.next_agent_id
        self.next_agent_id += 1
        return agent_id

    def allocate_node_id(self) -> int:
        node_id = self.next_node_id
        self.next_node_id += 1
        return node_id

    def allocate_structure_id(self) -> int:
        structure_id = self.next_structure_id
        self.next_structure_id += 1
        return structure_id

    def allocate_zone_id(self) -> int:
        zone_id = self.next_zone_id
        self.next_zone_id += 1
        return zone_id

    # ===== QUERIES =====

    def agent(self, agent_id: int) -> Agent | None:
        return self.agents.get(agent_id)

    def alive_agents(self) -> list[Agent]:
        """Alive agents in ascending ID order (the tie-breaking order)."""
        return [self.agents[i] for i in sorted(self.agents) if self.agents[i].alive]

    def agent_qi(self, agent_id: int) -> int:
        return self.ledger.get_balance(agent_principal(agent_id))

    def agent_at(self, position: Position) -> Agent | None:
        """Alive agent occupying ``position``."""
        for agent in self.alive_agents():
            if agent.position == position:
                return agent
        return None

    def structure_at(self, position: Position) -> Structure | None:
        for structure_id in sorted(self.structures):
            if self.structures[structure_id].position == position:
                return self.structures[structure_id]
        return None

    def zone_containing(self, position: Position) -> Zone | None:
        for zone_id in sorted(self.zones):
            if self.zones[zone_id].contains(position):
                return self.zones[zone_id]
        return None

    def zones_of(self, agent_id: int) -> list[int]:
        return [z for z in sorted(self.zones) if agent_id in self.zones[z].members]

    def free_position_near(self, position: Position) -> Position:
        """First unoccupied position walking +x from ``position``."""
        candidate = position
        while self.agent_at(candidate) is not None:
            candidate = candidate.offset(1, 0, 0)
        return candidate

    def nearest_ore_node(
        self, position: Position, kind: OreKind, distance: int
    ) -> OreNode | None:
        """Closest non-empty node of ``kind`` within range (Manhattan, then ID)."""
        best: OreNode | None = None
        for node_id in sorted(self.ore_nodes):
            node = self.ore_nodes[node_id]
            if node.kind != kind or node.quantity <= 0:
                continue
            if not position.within_range(node.position, distance):
                continue
            if best is None or position.manhattan(node.position) < position.manhattan(best.position):
                best = node
        return best

    def nearest_recharge_node(self, position: Position, distance: int) -> RechargeNode | None:
        best: RechargeNode | None = None
        for node_id in sorted(self.recharge_nodes):
            node = self.recharge_nodes[node_id]
            if node.charge <= 0 or not position.within_range(node.position, distance):
                continue
            if best is None or position.manhattan(node.position) < position.manhattan(best.position):
                best = node
        return best

    def observe(self, agent_id: int, scan_range: int, zone_size: int = 16) -> Observation:
        """Free, read-only local scan for one agent."""
        agent = self.agents[agent_id]
        here = agent.position
        return {
            "agent_id": agent.id,
            "tick": self.tick,
            "position": here.to_dict(),
            "qi": self.agent_qi(agent.id),
            "transistors": agent.transistors,
            "age": agent.age,
            "max_age": agent.max_age,
            "status": agent.status.value,
            "nearby_ore_nodes": [
                {
                    "id": n.id,
                    "kind": n.kind.value,
                    "position": n.position.to_dict(),
                    "quantity": n.quantity,
                }
                for _, n in sorted(self.ore_nodes.items())
                if n.position.within_range(here, scan_range)
            ],
            "nearby_recharge_nodes": [
                {
                    "id": n.id,
                    "position": n.position.to_dict(),
                    "charge": n.charge,
                    "capacity": n.capacity,
                }
                for _, n in sorted(self.recharge_nodes.items())
                if n.position.within_range(here, scan_range)
            ],
            "nearby_structures": [
                {"id": s.id, "kind": s.kind.value, "position": s.position.to_dict(), "owner": s.owner}
                for _, s in sorted(self.structures.items())
                if s.position.within_range(here, scan_range)
            ],
            "nearby_agents": [
                {"id": a.id, "position": a.position.to_dict()}
                for a in self.alive_agents()
                if a.id != agent.id and a.position.within_range(here, scan_range)
            ],
            "zones": self.zones_of(agent.id),
            "zone_cell": list(here.zone_cell(zone_size)),
            "memory": list(agent.memory),
        }

    # ===== SUPPLY =====

    def world_qi(self) -> int:
        """Qi held inside world nodes (qi ore plus recharge charge)."""
        ore = sum(n.quantity for n in self.ore_nodes.values() if n.kind == OreKind.QI)
        charge = sum(n.charge for n in self.recharge_nodes.values())
        return ore + charge

    def circulating_qi(self) -> int:
        """Qi held by wallets and agents."""
        return self.ledger.total_balances()

    def total_supply(self) -> int:
        return (
            self.circulating_qi()
            + self.ledger.ambient_pool
            + self.world_qi()
            + self.ledger.burned
        )

    def check_consistency(self) -> list[str]:
        """Return a list of invariant violations (empty when consistent)."""
        problems: list[str] = []
        if self.tick < 0:
            problems.append(f"negative tick {self.tick}")
        for pid, amount in self.ledger.balances.items():
            if amount < 0:
                problems.append(f"negative balance for {pid}: {amount}")
        if self.ledger.ambient_pool < 0:
            problems.append("negative ambient pool")
        if self.total_supply() != self.ledger.minted:
            problems.append(
                f"supply mismatch: minted {self.ledger.minted}, accounted {self.total_supply()}"
            )
        occupied: dict[Position, int] = {}
        for agent_id, agent in sorted(self.agents.items()):
            if agent_id != agent.id:
                problems.append(f"agent key {agent_id} != id {agent.id}")
            if agent_id >= self.next_agent_id:
                problems.append(f"agent id {agent_id} >= next_agent_id {self.next_agent_id}")
            if agent.wallet not in self.wallets:
                problems.append(f"agent {agent_id} owned by unknown wallet {agent.wallet}")
            if agent.principal not in self.ledger.balances:
                problems.append(f"agent {agent_id} has no ledger account")
            if agent.last_nonce < 0 or agent.age < 0 or agent.transistors < 0:
                problems.append(f"agent {agent_id} has negative counters")
            if agent.alive:
                if agent.position in occupied:
                    problems.append(
                        f"agents {occupied[agent.position]} and {agent_id} share {agent.position}"
                    )
                occupied[agent.position] = agent_id
        for pid in self.ledger.balances:
            if pid.startswith(AGENT_PREFIX):
                if int(pid[len(AGENT_PREFIX):]) not in self.agents:
                    problems.append(f"ledger account {pid} has no agent")
            elif pid not in self.wallets:
                problems.append(f"ledger account {pid} has no wallet")
        for node in list(self.ore_nodes.values()):
            if node.quantity < 0:
                problems.append(f"ore node {node.id} has negative quantity")
        for rnode in self.recharge_nodes.values():
            if not 0 <= rnode.charge <= rnode.capacity:
                problems.append(f"recharge node {rnode.id} charge outside [0, capacity]")
        node_ids = set(self.ore_nodes) | set(self.recharge_nodes)
        if node_ids and max(node_ids) >= self.next_node_id:
            problems.append("node id >= next_node_id")
        for structure in self.structures.values():
            if structure.owner not in self.agents:
                problems.append(f"structure {structure.id} owned by unknown agent {structure.owner}")
        for zone in self.zones.values():
            if zone.claimant not in self.agents:
                problems.append(f"zone {zone.id} claimed by unknown agent {zone.claimant}")
            for member in zone.members:
                if member not in self.agents:
                    problems.append(f"zone {zone.id} has unknown member {member}")
        return problems

    # ===== COPY / SERIALIZATION =====

    def copy(self) -> "WorldState":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Full world registry (wallet key material excluded)."""
        return {
            "tick": self.tick,
            "ledger": dict(self.ledger.to_dict()),
            "wallets": {a: w.to_dict() for a, w in sorted(self.wallets.items())},
            "agents": [a.to_dict() for _, a in sorted(self.agents.items())],
            "ore_nodes": [n.to_dict() for _, n in sorted(self.ore_nodes.items())],
            "recharge_nodes": [n.to_dict() for _, n in sorted(self.recharge_nodes.items())],
            "structures": [s.to_dict() for _, s in sorted(self.structures.items())],
            "zones": [z.to_dict() for _, z in sorted(self.zones.items())],
            "next_agent_id": self.next_agent_id,
            "next_node_id": self.next_node_id,
            "next_structure_id": self.next_structure_id,
            "next_zone_id": self.next_zone_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorldState":
        state = cls(
            tick=int(data.get("tick", 0)),
            ledger=Ledger.from_dict(data.get("ledger", {})),
            next_agent_id=int(data.get("next_agent_id", 1)),
            next_node_id=int(data.get("next_node_id", 1)),
            next_structure_id=int(data.get("next_structure_id", 1)),
            next_zone_id=int(data.get("next_zone_id", 1)),
        )
        for address, raw in data.get("wallets", {}).items():
            state.wallets[address] = Wallet(
                address=address,
                public_key=str(raw["public_key"]),
                mining_nonce=int(raw.get("mining_nonce", 0)),
            )
        for raw in data.get("agents", []):
            agent = Agent.from_dict(raw)
            state.agents[agent.id] = agent
        for raw in data.get("ore_nodes", []):
            node = OreNode.from_dict(raw)
            state.ore_nodes[node.id] = node
        for raw in data.get("recharge_nodes", []):
            rnode = RechargeNode.from_dict(raw)
            state.recharge_nodes[rnode.id] = rnode
        for raw in data.get("structures", []):
            structure = Structure.from_dict(raw)
            state.structures[structure.id] = structure
        for raw in data.get("zones", []):
            zone = Zone.from_dict(raw)
            state.zones[zone.id] = zone
        return state

    def canonical_json(self) -> str:
        """Stable serialization used for determinism comparisons."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
