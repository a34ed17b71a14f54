"""World infusion - seed ore and recharge nodes, paid for by a wallet.

Qi ore and recharge nodes hold real Qi: the wallet's payment moves into
the new nodes. Transistor ore is not Qi; it is priced per unit and the
payment is burned.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Literal

from ..config_schema import AppConfig
from .errors import WorldCommandError
from .logger import TickEvents
from .state import OreKind, OreNode, Position, RechargeNode, WorldState

logger = logging.getLogger(__name__)

TRANSISTOR_PRICE = 100
DEFAULT_SPREAD_RADIUS = 8

InfusionKind = Literal["qi", "transistor", "recharge"]


@dataclass
class Spread:
    """Centre and radius for random node placement."""

    center: Position = field(default_factory=Position.origin)
    radius: int = DEFAULT_SPREAD_RADIUS

    @classmethod
    def parse(cls, text: str) -> "Spread":
        """Parse ``"x,y,z,r"``."""
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 4:
            raise ValueError("spread must be formatted as x,y,z,r")
        x, y, z, r = (int(p) for p in parts)
        if r < 0:
            raise ValueError("spread radius must be >= 0")
        return cls(Position(x, y, z), r)


@dataclass
class InfusionRequest:
    """One ``world infuse`` call.

    With ``amount`` set, that total is split into nodes of at most
    ``capacity`` each; otherwise ``count`` nodes of ``capacity`` are made.
    """

    kind: InfusionKind = "qi"
    wallet: str | None = None
    amount: int | None = None
    count: int = 1
    capacity: int = 10
    regen: int = 1
    decay: int = 0
    spread: Spread = field(default_factory=Spread)
    seed: int | None = None


@dataclass
class InfusionResult:
    wallet: str
    kind: str
    node_ids: list[int]
    charged: int
    wallet_balance: int


def _capacities(request: InfusionRequest) -> list[int]:
    if request.capacity <= 0:
        raise WorldCommandError("capacity must be greater than 0")
    if request.amount is not None:
        if request.amount <= 0:
            raise WorldCommandError("amount must be greater than 0")
        full, rest = divmod(request.amount, request.capacity)
        return [request.capacity] * full + ([rest] if rest else [])
    if request.count <= 0:
        raise WorldCommandError("count must be at least 1")
    return [request.capacity] * request.count


def _clamp(value: int, bounds: int) -> int:
    return max(-bounds, min(bounds, value))


def _place(spread: Spread, rng: random.Random, bounds: int) -> Position:
    r = spread.radius
    return Position(
        _clamp(spread.center.x + rng.randint(-r, r), bounds),
        _clamp(spread.center.y + rng.randint(-r, r), bounds),
        _clamp(spread.center.z + rng.randint(-r, r), bounds),
    )


def infuse_world(
    state: WorldState,
    request: InfusionRequest,
    config: AppConfig,
    events: TickEvents,
) -> InfusionResult:
    """Charge the wallet and add the requested nodes to ``state``."""
    if request.wallet is None:
        if not state.wallets:
            raise WorldCommandError("no wallets found; create one first")
        address = sorted(state.wallets)[0]
    else:
        address = request.wallet
    if address not in state.wallets:
        raise WorldCommandError(f"unknown wallet {address}")
    if request.regen < 0 or request.decay < 0:
        raise WorldCommandError("regen and decay must be non-negative")

    capacities = _capacities(request)
    units = sum(capacities)
    charged = units * TRANSISTOR_PRICE if request.kind == "transistor" else units
    balance = state.ledger.get_balance(address)
    if balance < charged:
        raise WorldCommandError(f"insufficient wallet balance: have {balance}, need {charged}")

    if request.kind == "transistor":
        state.ledger.burn(address, charged, "transistor_infusion")
    else:
        state.ledger.deposit_to_world(address, charged, "world_infusion")

    rng = random.Random(request.seed)
    bounds = config.world.bounds
    node_ids: list[int] = []
    for capacity in capacities:
        position = _place(request.spread, rng, bounds)
        node_id = state.allocate_node_id()
        if request.kind == "recharge":
            state.recharge_nodes[node_id] = RechargeNode(
                id=node_id, position=position, capacity=capacity, charge=capacity, regen_per_tick=request.regen
            )
        else:
            state.ore_nodes[node_id] = OreNode(
                id=node_id,
                position=position,
                kind=OreKind(request.kind),
                quantity=capacity,
                decay_per_tick=request.decay,
            )
        node_ids.append(node_id)
        events.emit(
            "node_infused",
            node_id=node_id,
            kind=request.kind,
            position=position.to_dict(),
            quantity=capacity,
            wallet=address,
        )

    logger.info(
        "Infused %d %s node(s) from wallet %s (charged %d)", len(node_ids), request.kind, address, charged
    )
    return InfusionResult(
        wallet=address,
        kind=request.kind,
        node_ids=node_ids,
        charged=charged,
        wallet_balance=state.ledger.get_balance(address),
    )
