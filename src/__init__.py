"""Harimu world runtime source package.

This package contains the runtime components:
- config: Configuration loading and management
- world: World state, Qi ledger, wallets, actions, validation and persistence
- simulation: Brains, the tick engine and the run loop
"""

from __future__ import annotations

__all__: list[str] = []
