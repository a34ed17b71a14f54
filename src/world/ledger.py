"""Ledger for Qi, the world's only currency and energy.

Every balance mutation in the runtime goes through here: mining rewards,
action fees, harvests, docking, infusion, reproduction transfers and
inheritance. Principals are plain string IDs - wallet addresses, or
``agent:<id>`` for agents.

Qi that belongs to no principal is tracked in two places:
- ambient_pool: fees, heirless estates and decayed qi ore. Recharge nodes
  refill from it before minting anything new.
- world nodes (qi ore quantity, recharge charge): held by WorldState, not here.

Supply accounting:
    minted == sum(balances) + ambient_pool + qi in world nodes + burned

WorldState.check_consistency() verifies this using the node totals it owns.
"""

# All balance mutations go through here.
# Never allow negative balances - fail loud.
from __future__ import annotations

from collections import defaultdict
from typing import Any, TypedDict


AGENT_PREFIX = "agent:"


def agent_principal(agent_id: int) -> str:
    """Ledger principal ID for an agent."""
    return f"{AGENT_PREFIX}{agent_id}"


def is_agent_principal(principal_id: str) -> bool:
    return principal_id.startswith(AGENT_PREFIX)


class LedgerSnapshot(TypedDict):
    """Serialized ledger."""
    balances: dict[str, int]
    ambient_pool: int
    minted: int
    burned: int


class Ledger:
    """Tracks integer Qi balances per principal plus unowned supply.

    ``flows`` accumulates signed balance changes by reason since the last
    reset_flows() call; the tick engine resets it per tick so conservation
    can be checked exactly.
    """

    balances: dict[str, int]
    ambient_pool: int
    minted: int
    burned: int
    flows: dict[str, int]

    def __init__(self) -> None:
        self.balances = {}
        self.ambient_pool = 0
        self.minted = 0
        self.burned = 0
        self.flows = defaultdict(int)

    # ===== ACCOUNTS =====

    def create_principal(self, principal_id: str, starting_qi: int = 0) -> None:
        """Open an account. A non-zero starting balance is minted."""
        if principal_id in self.balances:
            raise ValueError(f"principal {principal_id} already exists")
        self.balances[principal_id] = 0
        if starting_qi:
            self.mint(principal_id, starting_qi, "genesis")

    def has_principal(self, principal_id: str) -> bool:
        return principal_id in self.balances

    def get_balance(self, principal_id: str) -> int:
        """Balance for a principal (0 if unknown)."""
        return self.balances.get(principal_id, 0)

    def can_spend(self, principal_id: str, amount: int) -> bool:
        return self.get_balance(principal_id) >= amount

    def total_balances(self, prefix: str | None = None) -> int:
        """Sum of balances, optionally restricted to an ID prefix."""
        return sum(
            amount
            for pid, amount in self.balances.items()
            if prefix is None or pid.startswith(prefix)
        )

    # ===== SINGLE MUTATION PATH =====

    def _apply(self, principal_id: str, delta: int, reason: str) -> int:
        if principal_id not in self.balances:
            raise KeyError(f"unknown principal {principal_id}")
        new_balance = self.balances[principal_id] + delta
        if new_balance < 0:
            raise ValueError(
                f"{principal_id} balance would go negative: "
                f"have {self.balances[principal_id]}, delta {delta} ({reason})"
            )
        self.balances[principal_id] = new_balance
        self.flows[reason] += delta
        return new_balance

    @staticmethod
    def _check_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError(f"Qi amounts are integers, got {amount!r}")
        if amount < 0:
            raise ValueError(f"Qi amounts are non-negative, got {amount}")

    # ===== OPERATIONS =====

    def mint(self, principal_id: str, amount: int, reason: str) -> int:
        """Create new Qi into a balance (mining rewards, genesis grants)."""
        self._check_amount(amount)
        new_balance = self._apply(principal_id, amount, reason)
        self.minted += amount
        return new_balance

    def spend(self, principal_id: str, amount: int, reason: str) -> int:
        """Debit a balance into the ambient pool (fees, estates)."""
        self._check_amount(amount)
        new_balance = self._apply(principal_id, -amount, reason)
        self.ambient_pool += amount
        return new_balance

    def transfer(self, from_id: str, to_id: str, amount: int, reason: str) -> None:
        """Move Qi between principals."""
        self._check_amount(amount)
        if amount == 0 or from_id == to_id:
            return
        if to_id not in self.balances:
            raise KeyError(f"unknown principal {to_id}")
        self._apply(from_id, -amount, reason)
        self._apply(to_id, amount, reason)

    def collect_from_world(self, principal_id: str, amount: int, reason: str) -> int:
        """Credit Qi taken out of a world node (harvest, docking).

        The caller decrements the node by the same amount.
        """
        self._check_amount(amount)
        return self._apply(principal_id, amount, reason)

    def deposit_to_world(self, principal_id: str, amount: int, reason: str) -> int:
        """Debit Qi that the caller places into world nodes (infusion)."""
        self._check_amount(amount)
        return self._apply(principal_id, -amount, reason)

    def burn(self, principal_id: str, amount: int, reason: str) -> int:
        """Debit Qi converted into non-Qi matter (transistor ore)."""
        self._check_amount(amount)
        new_balance = self._apply(principal_id, -amount, reason)
        self.burned += amount
        return new_balance

    def release_to_pool(self, amount: int) -> None:
        """Return world-held Qi to the ambient pool (ore decay)."""
        self._check_amount(amount)
        self.ambient_pool += amount

    def draw_from_pool(self, amount: int) -> int:
        """Take up to ``amount`` from the ambient pool. Returns what was taken."""
        self._check_amount(amount)
        taken = min(amount, self.ambient_pool)
        self.ambient_pool -= taken
        return taken

    def mint_to_world(self, amount: int) -> None:
        """Record Qi created directly inside a world node (recharge minting)."""
        self._check_amount(amount)
        self.minted += amount

    # ===== FLOWS =====

    def reset_flows(self) -> None:
        self.flows = defaultdict(int)

    def flow_summary(self) -> dict[str, int]:
        """Non-zero signed flows since the last reset, sorted by reason."""
        return {k: v for k, v in sorted(self.flows.items()) if v}

    # ===== SERIALIZATION =====

    def to_dict(self) -> LedgerSnapshot:
        return {
            "balances": dict(sorted(self.balances.items())),
            "ambient_pool": self.ambient_pool,
            "minted": self.minted,
            "burned": self.burned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Ledger":
        ledger = cls()
        for principal_id, amount in data.get("balances", {}).items():
            ledger.balances[str(principal_id)] = int(amount)
        ledger.ambient_pool = int(data.get("ambient_pool", 0))
        ledger.minted = int(data.get("minted", 0))
        ledger.burned = int(data.get("burned", 0))
        return ledger
