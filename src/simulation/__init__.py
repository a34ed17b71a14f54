"""Simulation module - brains, the tick engine and the run loop."""

from .brain import Brain, BrainAdapter, BrainDecision, LoopBrain, ScriptBrain, LlmBrain, make_brain
from .engine import TickEngine, TickResult, EngineStatus
from .runner import WorldRunner

__all__ = [
    "Brain",
    "BrainAdapter",
    "BrainDecision",
    "LoopBrain",
    "ScriptBrain",
    "LlmBrain",
    "make_brain",
    "TickEngine",
    "TickResult",
    "EngineStatus",
    "WorldRunner",
]
