"""Action definitions, token parsing and signing bytes"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config_schema import CostsConfig
from .errors import ErrorResponse


class ActionType(str, Enum):
    """The closed set of things an agent can do in one tick."""

    SCAN = "scan"
    INSPECT = "inspect"
    IDLE = "idle"
    MOVE = "move"
    MINE = "mine"
    HARVEST_QI_ORE = "harvest_qi_ore"
    BUILD = "build"
    PLACE_BLOCK = "place_block"
    WRITE_PROGRAM = "write_program"
    CLAIM_ZONE = "claim_zone"
    JOIN_ZONE = "join_zone"
    LEAVE_ZONE = "leave_zone"
    EXPAND_ZONE = "expand_zone"
    REPRODUCE = "reproduce"


# Read-only actions: no signature, nonce or fee
FREE_ACTIONS: frozenset[ActionType] = frozenset({
    ActionType.SCAN,
    ActionType.INSPECT,
    ActionType.IDLE,
})


# =============================================================================
# PAYLOADS
# =============================================================================

class Payload(BaseModel):
    """Base payload: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class EmptyPayload(Payload):
    pass


class InspectPayload(Payload):
    agent_id: int | None = None


class OffsetPayload(Payload):
    dx: int
    dy: int
    dz: int


class HarvestPayload(Payload):
    node_id: int | None = None


class MinePayload(Payload):
    ore: Literal["qi", "transistor"] = "qi"
    node_id: int | None = None
    source: Literal["ore", "recharge"] = "ore"


class BuildPayload(Payload):
    kind: Literal["basic"] = "basic"


class WriteProgramPayload(Payload):
    program: str = Field(min_length=1)


class ClaimZonePayload(Payload):
    radius: int | None = Field(default=None, ge=0)


class ZoneRefPayload(Payload):
    zone_id: int


class ExpandZonePayload(Payload):
    zone_id: int
    amount: int = Field(default=1, gt=0)


PAYLOAD_MODELS: dict[ActionType, type[Payload]] = {
    ActionType.SCAN: EmptyPayload,
    ActionType.INSPECT: InspectPayload,
    ActionType.IDLE: EmptyPayload,
    ActionType.MOVE: OffsetPayload,
    ActionType.MINE: MinePayload,
    ActionType.HARVEST_QI_ORE: HarvestPayload,
    ActionType.BUILD: BuildPayload,
    ActionType.PLACE_BLOCK: OffsetPayload,
    ActionType.WRITE_PROGRAM: WriteProgramPayload,
    ActionType.CLAIM_ZONE: ClaimZonePayload,
    ActionType.JOIN_ZONE: ZoneRefPayload,
    ActionType.LEAVE_ZONE: ZoneRefPayload,
    ActionType.EXPAND_ZONE: ExpandZonePayload,
    ActionType.REPRODUCE: EmptyPayload,
}


def qi_cost_for(action_type: ActionType, costs: CostsConfig) -> int:
    return costs.read if action_type in FREE_ACTIONS else costs.write


# =============================================================================
# ACTION
# =============================================================================

@dataclass
class ActionRequest:
    """What a brain asked for, before nonce and signature are attached."""

    action_type: ActionType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def token(self) -> str:
        return format_action_token(self.action_type, self.payload)


@dataclass
class Action:
    """A signed, nonce-carrying action submitted for one agent."""

    agent_id: int
    action_type: ActionType
    payload: dict[str, Any]
    nonce: int
    qi_cost: int
    signature: str = ""

    @property
    def is_free(self) -> bool:
        return self.action_type in FREE_ACTIONS

    def signing_bytes(self) -> bytes:
        """Canonical bytes covered by the signature."""
        return signing_bytes(
            self.agent_id, self.action_type, self.payload, self.nonce, self.qi_cost
        )

    def validated_payload(self) -> Payload:
        """Payload as its typed model. Raises pydantic.ValidationError."""
        return PAYLOAD_MODELS[self.action_type].model_validate(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "action_type": self.action_type.value,
            "payload": self.payload,
            "nonce": self.nonce,
            "qi_cost": self.qi_cost,
        }


def signing_bytes(
    agent_id: int,
    action_type: ActionType,
    payload: dict[str, Any],
    nonce: int,
    qi_cost: int,
) -> bytes:
    return json.dumps(
        {
            "agent_id": agent_id,
            "action_type": action_type.value,
            "payload": payload,
            "nonce": nonce,
            "qi_cost": qi_cost,
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode()


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class Accepted:
    """Action applied. ``data`` carries read results for free actions."""

    action: Action
    qi_spent: int
    data: dict[str, Any] | None = None

    @property
    def accepted(self) -> bool:
        return True


@dataclass
class Rejected:
    """Action refused; the state is untouched."""

    action: Action
    error: ErrorResponse

    @property
    def accepted(self) -> bool:
        return False

    @property
    def code(self) -> str:
        return self.error.code

    def to_dict(self) -> dict[str, Any]:
        result = self.action.to_dict()
        result.update(self.error.to_dict())
        return result


ActionOutcome = Accepted | Rejected


# =============================================================================
# TOKENS
# =============================================================================

def _ints(text: str, count: int, what: str) -> list[int] | str:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != count:
        return f"{what} needs {count} comma-separated integers, got {text!r}"
    try:
        return [int(p) for p in parts]
    except ValueError:
        return f"{what} needs integers, got {text!r}"


def _offset(arg: str | None, what: str) -> dict[str, Any] | str:
    if not arg:
        return f"{what} requires dx,dy,dz"
    values = _ints(arg, 3, what)
    if isinstance(values, str):
        return values
    return {"dx": values[0], "dy": values[1], "dz": values[2]}


def _optional_int(arg: str | None, key: str, what: str) -> dict[str, Any] | str:
    if not arg:
        return {}
    try:
        return {key: int(arg)}
    except ValueError:
        return f"{what} expects an integer {key}, got {arg!r}"


def _required_int(arg: str | None, key: str, what: str) -> dict[str, Any] | str:
    if not arg:
        return f"{what} requires {key}"
    return _optional_int(arg, key, what)


def _mine_payload(arg: str | None) -> dict[str, Any] | str:
    if not arg:
        return {"ore": "qi", "source": "ore"}
    head, _, node = arg.partition(",")
    head = head.strip().lower()
    payload: dict[str, Any]
    if head == "recharge":
        payload = {"ore": "qi", "source": "recharge"}
    elif head in ("qi", "transistor"):
        payload = {"ore": head, "source": "ore"}
    else:
        return f"mine expects qi, transistor or recharge, got {head!r}"
    if node.strip():
        try:
            payload["node_id"] = int(node)
        except ValueError:
            return f"mine expects an integer node id, got {node!r}"
    return payload


def _expand_payload(arg: str | None) -> dict[str, Any] | str:
    if not arg:
        return "expand_zone requires zone_id[,amount]"
    head, _, amount = arg.partition(",")
    try:
        payload: dict[str, Any] = {"zone_id": int(head)}
        if amount.strip():
            payload["amount"] = int(amount)
    except ValueError:
        return f"expand_zone expects integers, got {arg!r}"
    return payload


def parse_action_token(token: str) -> ActionRequest | str:
    """Parse a brain token like ``move:1,0,0`` or ``{"action": "scan"}``.

    Returns the request if valid, or an error string if invalid.
    """
    text = token.strip()
    if not text:
        return "empty action"

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            return f"Invalid JSON: {e}"
        if not isinstance(data, dict) or not isinstance(data.get("action"), str):
            return "JSON actions need a string 'action' field"
        return parse_action_token(data["action"])

    name, sep, rest = text.partition(":")
    name = name.strip().lower()
    arg: str | None = rest.strip() if sep else None
    try:
        action_type = ActionType(name)
    except ValueError:
        return f"unknown action {name!r}"

    payload: dict[str, Any] | str
    if action_type in (ActionType.SCAN, ActionType.IDLE, ActionType.REPRODUCE):
        payload = f"{action_type.value} takes no argument, got {arg!r}" if arg else {}
    elif action_type == ActionType.INSPECT:
        payload = _optional_int(arg, "agent_id", "inspect")
    elif action_type == ActionType.MOVE:
        payload = _offset(arg, "move")
    elif action_type == ActionType.PLACE_BLOCK:
        payload = _offset(arg, "place_block")
    elif action_type == ActionType.HARVEST_QI_ORE:
        payload = _optional_int(arg, "node_id", "harvest_qi_ore")
    elif action_type == ActionType.MINE:
        payload = _mine_payload(arg)
    elif action_type == ActionType.BUILD:
        payload = {"kind": arg.lower() if arg else "basic"}
    elif action_type == ActionType.WRITE_PROGRAM:
        # keep the raw remainder so programs may contain colons
        payload = {"program": rest} if sep and rest.strip() else "write_program requires program text"
    elif action_type == ActionType.CLAIM_ZONE:
        payload = _optional_int(arg, "radius", "claim_zone")
    elif action_type in (ActionType.JOIN_ZONE, ActionType.LEAVE_ZONE):
        payload = _required_int(arg, "zone_id", action_type.value)
    else:
        payload = _expand_payload(arg)

    if isinstance(payload, str):
        return payload
    try:
        PAYLOAD_MODELS[action_type].model_validate(payload)
    except ValidationError as e:
        return f"invalid {action_type.value} payload: {e.errors()[0]['msg']}"
    return ActionRequest(action_type, payload)


def format_action_token(action_type: ActionType, payload: dict[str, Any]) -> str:
    """Inverse of parse_action_token for logging and memory notes."""
    if action_type in (ActionType.MOVE, ActionType.PLACE_BLOCK):
        return f"{action_type.value}:{payload['dx']},{payload['dy']},{payload['dz']}"
    if action_type == ActionType.MINE:
        head = "recharge" if payload.get("source") == "recharge" else payload.get("ore", "qi")
        if payload.get("node_id") is not None:
            return f"mine:{head},{payload['node_id']}"
        return f"mine:{head}"
    if action_type == ActionType.WRITE_PROGRAM:
        return f"write_program:{payload['program']}"
    if action_type == ActionType.EXPAND_ZONE:
        return f"expand_zone:{payload['zone_id']},{payload.get('amount', 1)}"
    values = [str(v) for v in payload.values() if v is not None]
    if values:
        return f"{action_type.value}:{values[0]}"
    return action_type.value
