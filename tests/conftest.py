"""Pytest fixtures for Harimu tests.

Common fixtures for building small worlds, funding agents and signing
actions without touching the real state directory.
"""

from __future__ import annotations

# Load environment variables from .env before any tests run
from dotenv import load_dotenv

load_dotenv()

from pathlib import Path
from typing import Any, Callable

import pytest

from src.config_schema import AppConfig
from src.world.actions import Action, ActionType, qi_cost_for
from src.world.lifecycle import AgentLifecycle
from src.world.logger import TickEvents
from src.world.persistence import StateStore
from src.world.state import Agent, AgentStatus, Position, WorldState
from src.world.validator import ActionValidator
from src.world.wallets import WalletStore


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "external: mark test as requiring external services (real API calls)"
    )


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options."""
    parser.addoption(
        "--run-external",
        action="store_true",
        default=False,
        help="Run tests marked as external (real API calls, slow)",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Skip external tests unless --run-external is given."""
    if not config.getoption("--run-external"):
        skip_external = pytest.mark.skip(reason="need --run-external option to run")
        for item in items:
            if "external" in item.keywords:
                item.add_marker(skip_external)


@pytest.fixture
def app_config() -> AppConfig:
    """Small, fast configuration for testing.

    Mining difficulty is low enough that a few hundred iterations find a
    hash, snapshots are synchronous and the brain timeout is short.
    """
    return AppConfig.model_validate({
        "world": {"bounds": 16, "scan_range": 4, "harvest_range": 1, "harvest_per_action": 3},
        "mining": {"difficulty_bits": 4, "pow_reward": 5, "default_iterations": 1000},
        "lifecycle": {"default_max_age": 50, "memory_limit": 4},
        "brain": {"mode": "script", "timeout_seconds": 0.5},
        "snapshots": {"enabled": True, "per_tick": True, "background": False},
        "logging": {"events_file": None},
    })


@pytest.fixture
def state() -> WorldState:
    """Empty world at tick 0."""
    return WorldState()


@pytest.fixture
def wallet_store(state: WorldState, app_config: AppConfig) -> WalletStore:
    return WalletStore(state, app_config)


@pytest.fixture
def lifecycle(app_config: AppConfig) -> AgentLifecycle:
    return AgentLifecycle(app_config)


@pytest.fixture
def validator(app_config: AppConfig, lifecycle: AgentLifecycle) -> ActionValidator:
    return ActionValidator(app_config, lifecycle)


@pytest.fixture
def events(state: WorldState) -> TickEvents:
    """Event buffer for the tick after ``state.tick``."""
    return TickEvents(state.tick + 1)


@pytest.fixture
def spawn_agent(
    state: WorldState,
    wallet_store: WalletStore,
    lifecycle: AgentLifecycle,
) -> Callable[..., Agent]:
    """Factory: spawn an active agent funded with ``qi``.

    Qi is minted into a fresh wallet and infused into the agent, so the
    world's supply accounting stays consistent.

    Usage:
        agent = spawn_agent(qi=3, position=Position(0, 0, 0))
    """

    def _spawn(
        qi: int = 0,
        position: Position | None = None,
        wallet: str | None = None,
        max_age: int | None = None,
    ) -> Agent:
        if wallet is None:
            wallet = wallet_store.create_wallet().address
        agent = lifecycle.spawn(
            state,
            wallet,
            position or Position.origin(),
            TickEvents(state.tick),
            max_age=max_age,
        )
        agent.status = AgentStatus.ACTIVE
        if qi:
            state.ledger.mint(wallet, qi, "genesis")
            wallet_store.infuse_agent(wallet, agent.id, qi)
        return agent

    return _spawn


@pytest.fixture
def sign_action(
    wallet_store: WalletStore, app_config: AppConfig
) -> Callable[..., Action]:
    """Factory: build an action for an agent, signed by its wallet.

    The nonce defaults to the agent's next expected nonce.
    """

    def _sign(
        agent: Agent,
        action_type: ActionType,
        payload: dict[str, Any] | None = None,
        nonce: int | None = None,
    ) -> Action:
        action = Action(
            agent_id=agent.id,
            action_type=action_type,
            payload=dict(payload or {}),
            nonce=agent.last_nonce + 1 if nonce is None else nonce,
            qi_cost=qi_cost_for(action_type, app_config.costs),
        )
        action.signature = wallet_store.sign(agent.wallet, action.signing_bytes())
        return action

    return _sign


@pytest.fixture
def state_store(tmp_path: Path) -> StateStore:
    """StateStore rooted in a temporary directory."""
    return StateStore(tmp_path / "state")
