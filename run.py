#!/usr/bin/env python3
"""
Harimu - command surface for the world runtime

Usage:
    python run.py init                              # Reset .harimu/ to an empty world
    python run.py wallet create                     # New wallet (prints address)
    python run.py mine <address> --iterations 50000 # Bounded proof-of-work
    python run.py world infuse --amount 30          # Seed qi ore near the origin
    python run.py agent create --wallet <address>   # Spawn an agent
    python run.py agent infuse 1 --wallet <address> --amount 10
    python run.py start 20 --brain loop --delay-ms 100
    python run.py status
    python run.py stop                              # Ask a running `start` to halt
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from dotenv import load_dotenv

from src.config import get_validated_config, load_config, set_config_value, state_dir
from src.config_schema import AppConfig
from src.simulation.brain import make_brain
from src.simulation.runner import WorldRunner
from src.world.errors import StateCorruptionError, WorldCommandError
from src.world.infusion import InfusionRequest, Spread, infuse_world
from src.world.lifecycle import AgentLifecycle
from src.world.logger import EventLog, TickEvents
from src.world.persistence import StateStore
from src.world.snapshot import SnapshotWriter
from src.world.state import Position, WorldState
from src.world.wallets import WalletStore

# Load environment variables (LLM API keys)
load_dotenv()

logger = logging.getLogger("harimu")


class Session:
    """Loaded config, state and wallet store for one command."""

    def __init__(self, args: argparse.Namespace) -> None:
        self.config: AppConfig = get_validated_config()
        self.store = StateStore(state_dir(args.state_dir))
        self.state, self.keyring = self.store.load()
        self.wallets = WalletStore(self.state, self.config, self.keyring)
        events_file = self.config.logging.events_file
        self.event_log = EventLog(self.store.root / events_file if events_file else None)

    def events(self) -> TickEvents:
        return TickEvents(self.state.tick)

    def commit(self, events: TickEvents | None = None) -> None:
        problems = self.state.check_consistency()
        if problems:
            raise WorldCommandError(f"command would corrupt the world: {problems[0]}")
        self.store.save(self.state, self.wallets.keyring)
        if events is not None:
            self.event_log.record(events)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_init(args: argparse.Namespace) -> int:
    config = get_validated_config()
    store = StateStore(state_dir(args.state_dir))
    store.reset(config.logging.events_file)
    store.save(WorldState(), {})
    store.set_status("initialized", message="fresh world", last_tick=0)
    print(f"Initialized empty world in {store.root}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    session = Session(args)
    runtime = session.store.load_runtime()
    state = session.state
    _print({
        "status": runtime.status,
        "last_tick": runtime.last_tick,
        "message": runtime.message,
        "tick": state.tick,
        "wallets": len(state.wallets),
        "agents": {"alive": len(state.alive_agents()), "total": len(state.agents)},
        "nodes": {"ore": len(state.ore_nodes), "recharge": len(state.recharge_nodes)},
        "structures": len(state.structures),
        "zones": len(state.zones),
        "supply": {
            "minted": state.ledger.minted,
            "circulating": state.circulating_qi(),
            "ambient_pool": state.ledger.ambient_pool,
            "in_world": state.world_qi(),
            "burned": state.ledger.burned,
        },
        "action_stats": runtime.action_stats.to_dict(),
    })
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    store = StateStore(state_dir(args.state_dir))
    runtime = store.set_status("stopped", message="stop requested")
    print(f"Runtime marked stopped at tick {runtime.last_tick}")
    return 0


def cmd_wallet(args: argparse.Namespace) -> int:
    session = Session(args)
    wallets = session.wallets
    if args.wallet_command == "create":
        wallet = wallets.create_wallet()
        session.commit()
        _print({"address": wallet.address, "public_key": wallet.public_key})
    elif args.wallet_command == "balance":
        _print({"address": args.address, "balance": wallets.balance(args.address)})
    elif args.wallet_command == "list":
        _print([
            {"address": w.address, "balance": balance, "mining_nonce": w.mining_nonce}
            for w, balance in wallets.list_wallets()
        ])
    elif args.wallet_command == "transfer":
        wallets.transfer(args.from_address, args.to_address, args.amount)
        session.commit()
        _print({
            "from": args.from_address,
            "to": args.to_address,
            "amount": args.amount,
            "balance": wallets.balance(args.from_address),
        })
    return 0


def cmd_mine(args: argparse.Namespace) -> int:
    session = Session(args)
    result = session.wallets.mine(args.address, args.iterations, args.difficulty)
    session.commit()
    _print({
        "address": result.address,
        "found": result.found,
        "nonce": result.nonce,
        "hash": result.hash_hex,
        "reward": result.reward,
        "attempts": result.attempts,
        "balance": result.balance,
    })
    return 0


def _agent_view(state: WorldState, agent_id: int) -> dict[str, Any]:
    agent = state.agent(agent_id)
    if agent is None:
        raise WorldCommandError(f"unknown agent {agent_id}")
    view = agent.to_dict()
    view["qi"] = state.agent_qi(agent_id)
    return view


def cmd_agent(args: argparse.Namespace) -> int:
    session = Session(args)
    state = session.state
    lifecycle = AgentLifecycle(session.config)
    if args.agent_command == "create":
        try:
            position = Position.parse(args.position)
        except ValueError as e:
            raise WorldCommandError(str(e)) from e
        events = session.events()
        agent = lifecycle.spawn(
            state,
            args.wallet,
            position,
            events,
            name=args.name,
            max_age=args.max_age,
        )
        session.commit(events)
        _print(_agent_view(state, agent.id))
    elif args.agent_command == "list":
        _print([
            {
                "id": a.id,
                "name": a.name,
                "status": a.status.value,
                "position": a.position.to_dict(),
                "qi": state.agent_qi(a.id),
                "age": a.age,
                "max_age": a.max_age,
            }
            for _, a in sorted(state.agents.items())
        ])
    elif args.agent_command == "inspect":
        view = _agent_view(state, args.agent_id)
        view["action_stats"] = session.store.load_runtime().action_stats.for_agent(args.agent_id)
        _print(view)
    elif args.agent_command == "infuse":
        balance = session.wallets.infuse_agent(args.wallet, args.agent_id, args.amount)
        events = session.events()
        events.emit("agent_infused", agent_id=args.agent_id, wallet=args.wallet, amount=args.amount)
        session.commit(events)
        _print({"agent_id": args.agent_id, "qi": balance})
    elif args.agent_command == "extend-life":
        max_age = lifecycle.extend_life(state, args.agent_id, args.max_age)
        session.commit()
        _print({"agent_id": args.agent_id, "max_age": max_age})
    elif args.agent_command == "kill":
        events = session.events()
        killed = lifecycle.kill(state, args.agent_id, args.reason, events)
        session.commit(events)
        _print({"agent_id": args.agent_id, "killed": killed})
    return 0


def cmd_world(args: argparse.Namespace) -> int:
    session = Session(args)
    state = session.state
    if args.world_command == "infuse":
        try:
            spread = Spread.parse(args.spread) if args.spread else Spread()
        except ValueError as e:
            raise WorldCommandError(str(e)) from e
        request = InfusionRequest(
            kind=args.kind,
            wallet=args.wallet,
            amount=args.amount,
            count=args.count,
            capacity=args.capacity,
            regen=args.regen,
            decay=args.decay,
            spread=spread,
            seed=args.seed,
        )
        events = session.events()
        result = infuse_world(state, request, session.config, events)
        session.commit(events)
        if session.config.snapshots.enabled:
            SnapshotWriter(session.store.snapshot_dir, per_tick=False).publish(state)
        _print({
            "wallet": result.wallet,
            "kind": result.kind,
            "nodes": result.node_ids,
            "charged": result.charged,
            "wallet_balance": result.wallet_balance,
        })
    elif args.world_command == "nodes":
        _print({
            "ore_nodes": [n.to_dict() for _, n in sorted(state.ore_nodes.items())],
            "recharge_nodes": [n.to_dict() for _, n in sorted(state.recharge_nodes.items())],
            "structures": [s.to_dict() for _, s in sorted(state.structures.items())],
            "zones": [z.to_dict() for _, z in sorted(state.zones.items())],
        })
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    session = Session(args)
    config = session.config
    mode = args.brain or config.brain.mode
    if mode == "script" and not args.action:
        raise WorldCommandError("--brain script needs at least one --action")
    runner = WorldRunner(
        config,
        session.store,
        session.state,
        session.wallets.keyring,
        make_brain(mode, config, args.action),
        event_log=session.event_log,
    )
    try:
        state = runner.run(args.ticks, tick_rate=args.tick_rate, delay_ms=args.delay_ms)
    except KeyboardInterrupt:
        print("\nInterrupted; state saved through the last completed tick")
        return 130
    print(f"Stopped at tick {state.tick} ({runner.ticks_run} tick(s) run, {len(state.alive_agents())} agent(s) alive)")
    return 0


# =============================================================================
# PARSER
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Harimu world runtime")
    parser.add_argument("--config", default=None, help="Path to config file")
    parser.add_argument("--state-dir", default=None, help="Override persistence.state_dir")
    parser.add_argument("--log-level", default=None, help="Override logging.level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Reset to an empty world").set_defaults(func=cmd_init)
    sub.add_parser("status", help="Show runtime and world summary").set_defaults(func=cmd_status)
    sub.add_parser("stop", help="Ask a running loop to stop").set_defaults(func=cmd_stop)

    wallet = sub.add_parser("wallet", help="Wallet commands")
    wallet.set_defaults(func=cmd_wallet)
    wsub = wallet.add_subparsers(dest="wallet_command", required=True)
    wsub.add_parser("create")
    wsub.add_parser("list")
    balance = wsub.add_parser("balance")
    balance.add_argument("address")
    transfer = wsub.add_parser("transfer")
    transfer.add_argument("from_address")
    transfer.add_argument("to_address")
    transfer.add_argument("amount", type=int)

    mine = sub.add_parser("mine", help="Bounded proof-of-work mining")
    mine.set_defaults(func=cmd_mine)
    mine.add_argument("address")
    mine.add_argument("--iterations", type=int, default=None)
    mine.add_argument("--difficulty", type=int, default=None, help="Leading zero bits")

    agent = sub.add_parser("agent", help="Agent commands")
    agent.set_defaults(func=cmd_agent)
    asub = agent.add_subparsers(dest="agent_command", required=True)
    create = asub.add_parser("create")
    create.add_argument("--wallet", required=True)
    create.add_argument("--position", default="0,0,0", help="x,y,z")
    create.add_argument("--name", default=None)
    create.add_argument("--max-age", type=int, default=None)
    asub.add_parser("list")
    inspect = asub.add_parser("inspect")
    inspect.add_argument("agent_id", type=int)
    infuse = asub.add_parser("infuse")
    infuse.add_argument("agent_id", type=int)
    infuse.add_argument("--wallet", required=True)
    infuse.add_argument("--amount", type=int, required=True)
    extend = asub.add_parser("extend-life")
    extend.add_argument("agent_id", type=int)
    extend.add_argument("--max-age", type=int, required=True)
    kill = asub.add_parser("kill")
    kill.add_argument("agent_id", type=int)
    kill.add_argument("--reason", choices=["hazard", "corruption"], default="hazard")

    world = sub.add_parser("world", help="World commands")
    world.set_defaults(func=cmd_world)
    wdsub = world.add_subparsers(dest="world_command", required=True)
    winfuse = wdsub.add_parser("infuse")
    winfuse.add_argument("--wallet", default=None, help="Defaults to the first wallet")
    winfuse.add_argument("--kind", choices=["qi", "transistor", "recharge"], default="qi")
    winfuse.add_argument("--amount", type=int, default=None, help="Total units, split by capacity")
    winfuse.add_argument("--count", type=int, default=1)
    winfuse.add_argument("--capacity", type=int, default=10)
    winfuse.add_argument("--regen", type=int, default=1, help="Recharge per tick (recharge nodes)")
    winfuse.add_argument("--decay", type=int, default=0, help="Decay per tick (ore nodes)")
    winfuse.add_argument("--spread", default=None, metavar="x,y,z,r")
    winfuse.add_argument("--seed", type=int, default=None)
    wdsub.add_parser("nodes")

    start = sub.add_parser("start", help="Run the tick loop")
    start.set_defaults(func=cmd_start)
    start.add_argument("ticks", type=int, nargs="?", default=None, help="Ticks to run (default: until stopped)")
    start.add_argument("--brain", choices=["loop", "llm", "script"], default=None)
    start.add_argument("--tick-rate", type=float, default=None, help="Ticks per second")
    start.add_argument("--delay-ms", type=int, default=None)
    start.add_argument("--action", action="append", default=[], help="Scripted action token (repeatable)")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    load_config(args.config)
    if args.log_level:
        set_config_value("logging.level", args.log_level.upper())
    logging.basicConfig(
        level=get_validated_config().logging.level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return int(args.func(args))
    except StateCorruptionError as e:
        logger.error("%s", e)
        return 1
    except WorldCommandError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
