# World kernel package
from .state import (
    Position, Agent, AgentStatus, OreKind, OreNode, RechargeNode,
    Structure, StructureKind, Wallet, WorldState, Zone,
)
from .ledger import Ledger
from .actions import Action, ActionType, ActionRequest, Accepted, Rejected, parse_action_token
from .errors import ErrorCode, ErrorResponse, StateCorruptionError, WorldCommandError
from .logger import Event, EventLog, TickEvents, ActionStats
from .wallets import WalletStore, MiningResult
from .validator import ActionValidator
from .lifecycle import AgentLifecycle
from .snapshot import SnapshotWriter
from .persistence import StateStore, RuntimeStatus

__all__ = [
    "Position", "Agent", "AgentStatus", "OreKind", "OreNode", "RechargeNode",
    "Structure", "StructureKind", "Wallet", "WorldState", "Zone",
    "Ledger",
    "Action", "ActionType", "ActionRequest", "Accepted", "Rejected", "parse_action_token",
    "ErrorCode", "ErrorResponse", "StateCorruptionError", "WorldCommandError",
    "Event", "EventLog", "TickEvents", "ActionStats",
    "WalletStore", "MiningResult",
    "ActionValidator",
    "AgentLifecycle",
    "SnapshotWriter",
    "StateStore", "RuntimeStatus",
]
