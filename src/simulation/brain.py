"""Brains - pluggable decision drivers, and the bounded adapter around them.

A brain maps an observation to an action token (``move:1,0,0``,
``harvest_qi_ore``, ``{"action": "scan"}``...). The engine never calls a
brain directly: BrainAdapter runs it on a daemon thread, enforces the
timeout and turns every failure (exception, timeout, unparseable output)
into ``idle``. A hung brain is abandoned, never waited for: its thread
runs on until decide() returns but does not hold up interpreter exit.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from ..config_schema import AppConfig, BrainConfig
from ..world.actions import ActionRequest, ActionType, parse_action_token
from ..world.llm_client import LLMCallResult, call_llm, chat_messages
from ..world.state import Observation

logger = logging.getLogger(__name__)

IDLE = ActionRequest(ActionType.IDLE, {})


class Brain(Protocol):
    """Anything with ``decide(observation) -> token``."""

    name: str

    def decide(self, observation: Observation) -> str: ...


@dataclass
class BrainDecision:
    """What the adapter hands to the engine."""

    request: ActionRequest
    raw: str | None
    fallback: bool = False
    reason: str | None = None


# =============================================================================
# LOOP BRAIN
# =============================================================================

def _step_toward(here: dict[str, int], there: dict[str, int], radius: int) -> tuple[int, int, int]:
    return tuple(  # type: ignore[return-value]
        max(-radius, min(radius, there[axis] - here[axis])) for axis in ("x", "y", "z")
    )


def _chebyshev(a: dict[str, int], b: dict[str, int]) -> int:
    return max(abs(a[k] - b[k]) for k in ("x", "y", "z"))


class LoopBrain:
    """Deterministic survival loop: refuel, harvest, walk to ore, build, scan."""

    name = "loop"

    def __init__(
        self,
        harvest_range: int = 1,
        move_radius: int = 1,
        build_threshold: int = 8,
        reproduce_threshold: int = 12,
    ) -> None:
        self.harvest_range = harvest_range
        self.move_radius = move_radius
        self.build_threshold = build_threshold
        self.reproduce_threshold = reproduce_threshold

    def decide(self, observation: Observation) -> str:
        here = observation["position"]
        qi = observation["qi"]
        qi_nodes = [
            n for n in observation["nearby_ore_nodes"] if n["kind"] == "qi" and n["quantity"] > 0
        ]
        wells = [n for n in observation["nearby_recharge_nodes"] if n["charge"] > 0]

        if qi == 0:
            # Writes would be rejected; only a free action makes sense
            return "scan"
        if any(_chebyshev(here, n["position"]) <= self.harvest_range for n in qi_nodes):
            return "harvest_qi_ore"
        if any(_chebyshev(here, n["position"]) <= self.harvest_range for n in wells):
            return "mine:recharge"
        if qi >= self.reproduce_threshold:
            return "reproduce"
        on_structure = any(s["position"] == here for s in observation["nearby_structures"])
        if qi >= self.build_threshold and not on_structure:
            return "build:basic"
        targets = qi_nodes or wells
        if targets:
            nearest = min(targets, key=lambda n: (_chebyshev(here, n["position"]), n["id"]))
            dx, dy, dz = _step_toward(here, nearest["position"], self.move_radius)
            if (dx, dy, dz) != (0, 0, 0):
                return f"move:{dx},{dy},{dz}"
        return "scan"


# =============================================================================
# SCRIPT BRAIN
# =============================================================================

class ScriptBrain:
    """Replays a fixed list of tokens per agent, then idles (or loops)."""

    name = "script"

    def __init__(self, actions: list[str], repeat: bool = False) -> None:
        self.actions = list(actions)
        self.repeat = repeat
        self._cursor: dict[int, int] = {}

    def decide(self, observation: Observation) -> str:
        agent_id = observation["agent_id"]
        index = self._cursor.get(agent_id, 0)
        self._cursor[agent_id] = index + 1
        if not self.actions:
            return "idle"
        if index >= len(self.actions):
            if not self.repeat:
                return "idle"
            index %= len(self.actions)
        return self.actions[index]


# =============================================================================
# LLM BRAIN
# =============================================================================

ACTION_LABELS: list[str] = sorted(t.value for t in ActionType)

ACTION_SCHEMA: list[str] = [
    "move:dx,dy,dz",
    "harvest_qi_ore[:node_id]",
    "mine:qi|transistor|recharge[,node_id]",
    "build:basic",
    "place_block:dx,dy,dz",
    "write_program:<text>",
    "claim_zone[:radius]",
    "join_zone:<zone_id>",
    "leave_zone:<zone_id>",
    "expand_zone:<zone_id>[,amount]",
    "reproduce",
    "scan",
    "inspect[:agent_id]",
    "idle",
]

_LABEL_PATTERN = re.compile(r"\b(" + "|".join(sorted(ACTION_LABELS, key=len, reverse=True)) + r")\b([:][^\s\"'}]*)?")


def extract_action_token(text: str) -> str | None:
    """Pull an action token out of free-form model output.

    Accepts, in order: JSON ``{"action": ...}``, ``action=...``, a line
    ``action: ...``, then the first known action label in the text.
    """
    stripped = text.strip()
    if not stripped:
        return None

    candidates: list[str] = []
    json_match = re.search(r"\{.*\}", stripped, re.DOTALL)
    if json_match:
        try:
            data = json.loads(json_match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("action"), str):
            candidates.append(data["action"])

    lowered = stripped.lower()
    idx = lowered.find("action=")
    if idx >= 0:
        words = stripped[idx + len("action="):].split()
        if words:
            candidates.append(words[0].strip("{}[]()\"'"))

    for line in stripped.splitlines():
        line = line.strip().strip("`*")
        if line.lower().startswith("action:"):
            candidates.append(line[len("action:"):].strip().strip("\"'"))

    for candidate in candidates:
        if candidate and not isinstance(parse_action_token(candidate), str):
            return candidate

    for match in _LABEL_PATTERN.finditer(lowered):
        token = match.group(1) + (match.group(2) or "")
        if not isinstance(parse_action_token(token), str):
            return token
        if not isinstance(parse_action_token(match.group(1)), str):
            return match.group(1)
    return None


def system_prompt(goal: str) -> str:
    return (
        "You are an autonomous agent inside a voxel world where Qi is the only "
        f"currency and energy. Act to advance this goal: {goal} "
        "Every action except scan, inspect and idle costs 1 Qi. "
        'Choose exactly one action and reply ONLY with JSON: {"action": "<token>"}.'
    )


def build_prompt(observation: Observation, goal: str) -> str:
    payload: dict[str, Any] = {
        "goal": goal,
        "state": {
            "agent_id": observation["agent_id"],
            "tick": observation["tick"],
            "position": observation["position"],
            "qi": observation["qi"],
            "transistors": observation["transistors"],
            "age": observation["age"],
            "max_age": observation["max_age"],
            "status": observation["status"],
            "zones": observation["zones"],
        },
        "nearby": {
            "ore_nodes": observation["nearby_ore_nodes"],
            "recharge_nodes": observation["nearby_recharge_nodes"],
            "structures": observation["nearby_structures"],
            "agents": observation["nearby_agents"],
        },
        "memory": observation["memory"],
        "last_feedback": observation["memory"][-1] if observation["memory"] else "none yet",
        "actions": ACTION_SCHEMA,
        "reply": {"action": "one_of(actions)"},
    }
    return "Choose one action. Input:\n" + json.dumps(payload, indent=2, sort_keys=True)


class BrainError(Exception):
    """A brain produced nothing usable."""


class LlmBrain:
    """Asks an LLM (through litellm) for the next action."""

    name = "llm"

    def __init__(
        self,
        config: BrainConfig,
        complete: Callable[..., LLMCallResult] = call_llm,
    ) -> None:
        self.config = config
        self._complete = complete
        self.total_cost = 0.0

    def decide(self, observation: Observation) -> str:
        messages = chat_messages(system_prompt(self.config.goal), build_prompt(observation, self.config.goal))
        result = self._complete(
            self.config.model,
            messages,
            timeout=self.config.timeout_seconds,
            num_retries=self.config.num_retries,
        )
        self.total_cost += result.cost
        token = extract_action_token(result.content)
        if token is None:
            raise BrainError(f"no action in model reply: {result.content[:120]!r}")
        return token


def make_brain(mode: str, config: AppConfig, script: list[str] | None = None) -> Brain:
    """Build the brain for a ``--brain`` mode."""
    if mode == "loop":
        return LoopBrain(harvest_range=config.world.harvest_range)
    if mode == "script":
        return ScriptBrain(script or [])
    if mode == "llm":
        return LlmBrain(config.brain)
    raise ValueError(f"unknown brain mode {mode!r}")


# =============================================================================
# ADAPTER
# =============================================================================

class BrainAdapter:
    """Bounded, failure-proof call into a brain."""

    brain: Brain
    timeout_seconds: float

    def __init__(self, brain: Brain, timeout_seconds: float = 15.0) -> None:
        self.brain = brain
        self.timeout_seconds = timeout_seconds

    def decide(self, observation: Observation) -> BrainDecision:
        agent_id = observation["agent_id"]
        try:
            raw = self._call(observation, f"brain-{agent_id}").result(timeout=self.timeout_seconds)
        except FutureTimeout:
            logger.warning("Brain %s timed out for agent %d; idling", self.brain.name, agent_id)
            return BrainDecision(IDLE, None, fallback=True, reason="timeout")
        except Exception as e:  # any brain failure maps to idle
            logger.warning("Brain %s failed for agent %d: %s; idling", self.brain.name, agent_id, e)
            return BrainDecision(IDLE, None, fallback=True, reason=f"error: {e}")

        if not isinstance(raw, str):
            logger.warning("Brain %s returned %r for agent %d; idling", self.brain.name, raw, agent_id)
            return BrainDecision(IDLE, None, fallback=True, reason="malformed")
        parsed = parse_action_token(raw)
        if isinstance(parsed, str):
            logger.warning("Brain %s gave unusable action %r for agent %d (%s); idling", self.brain.name, raw, agent_id, parsed)
            return BrainDecision(IDLE, raw, fallback=True, reason=f"malformed: {parsed}")
        return BrainDecision(parsed, raw)

    def _call(self, observation: Observation, thread_name: str) -> Future[Any]:
        """Start brain.decide on its own daemon thread.

        Executor workers are joined at interpreter exit; a daemon thread is
        not. An abandoned call still runs to completion in the background.
        """
        future: Future[Any] = Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.brain.decide(observation))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=run, name=thread_name, daemon=True).start()
        return future
