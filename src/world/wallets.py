"""WalletStore - wallet keys, balances and bounded proof-of-work mining.

Public wallet records (address, public key, mining cursor) live in
WorldState.wallets; balances live in the ledger under the address. Private
keys are held here only and never enter snapshots or the world registry.

Mining hashes sha256(address || nonce as 8 little-endian bytes) and pays
out at most one reward per call.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..config_schema import AppConfig
from .errors import WorldCommandError
from .ledger import agent_principal
from .state import Wallet, WorldState

logger = logging.getLogger(__name__)

ADDRESS_BYTES = 20


@dataclass
class MiningResult:
    """Outcome of one bounded mining call."""

    address: str
    found: bool
    nonce: int | None
    hash_hex: str | None
    reward: int
    attempts: int
    balance: int


def leading_zero_bits(digest: bytes) -> int:
    """Count leading zero bits of a digest."""
    bits = 0
    for byte in digest:
        if byte == 0:
            bits += 8
            continue
        bits += 8 - byte.bit_length()
        break
    return bits


def pow_digest(address: str, nonce: int) -> bytes:
    return hashlib.sha256(address.encode() + nonce.to_bytes(8, "little")).digest()


def verify_signature(public_key_hex: str, data: bytes, signature: str) -> bool:
    """Verify an Ed25519 signature given hex public key and hex signature."""
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        public_key.verify(bytes.fromhex(signature), data)
        return True
    except (InvalidSignature, ValueError):
        return False


def _raw_public_hex(private_key: Ed25519PrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ).hex()


def _raw_private_hex(private_key: Ed25519PrivateKey) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    ).hex()


class WalletStore:
    """Wallet operations over a WorldState plus a private keyring.

    The store mutates the state it was given. Command handlers load the
    state, call the store, then persist.
    """

    state: WorldState
    config: AppConfig
    keyring: dict[str, str]

    def __init__(
        self,
        state: WorldState,
        config: AppConfig,
        keyring: dict[str, str] | None = None,
    ) -> None:
        self.state = state
        self.config = config
        self.keyring = dict(keyring) if keyring else {}

    # ===== WALLETS =====

    def create_wallet(self) -> Wallet:
        """Generate a keypair and register a zero-balance wallet."""
        private_key = Ed25519PrivateKey.generate()
        address = secrets.token_hex(ADDRESS_BYTES)
        while address in self.state.wallets:
            address = secrets.token_hex(ADDRESS_BYTES)
        wallet = Wallet(address=address, public_key=_raw_public_hex(private_key))
        self.state.wallets[address] = wallet
        self.state.ledger.create_principal(address)
        self.keyring[address] = _raw_private_hex(private_key)
        logger.info("Created wallet %s", address)
        return wallet

    def require(self, address: str) -> Wallet:
        wallet = self.state.wallets.get(address)
        if wallet is None:
            raise WorldCommandError(f"unknown wallet {address}")
        return wallet

    def balance(self, address: str) -> int:
        self.require(address)
        return self.state.ledger.get_balance(address)

    def list_wallets(self) -> list[tuple[Wallet, int]]:
        return [
            (wallet, self.state.ledger.get_balance(address))
            for address, wallet in sorted(self.state.wallets.items())
        ]

    def transfer(self, from_address: str, to_address: str, amount: int) -> None:
        self.require(from_address)
        self.require(to_address)
        if amount <= 0:
            raise WorldCommandError("transfer amount must be positive")
        if not self.state.ledger.can_spend(from_address, amount):
            raise WorldCommandError(
                f"wallet {from_address} has {self.balance(from_address)} Qi, needs {amount}"
            )
        self.state.ledger.transfer(from_address, to_address, amount, "wallet_transfer")

    def infuse_agent(self, address: str, agent_id: int, amount: int) -> int:
        """Move wallet Qi into one of the wallet's agents. Returns the agent's balance."""
        self.require(address)
        agent = self.state.agents.get(agent_id)
        if agent is None or not agent.alive:
            raise WorldCommandError(f"no living agent {agent_id}")
        if agent.wallet != address:
            raise WorldCommandError(f"agent {agent_id} is not owned by {address}")
        if amount <= 0:
            raise WorldCommandError("infusion amount must be positive")
        if not self.state.ledger.can_spend(address, amount):
            raise WorldCommandError(
                f"wallet {address} has {self.balance(address)} Qi, needs {amount}"
            )
        self.state.ledger.transfer(address, agent_principal(agent_id), amount, "infusion")
        return self.state.agent_qi(agent_id)

    # ===== MINING =====

    def mine(
        self,
        address: str,
        iterations: int | None = None,
        difficulty_bits: int | None = None,
    ) -> MiningResult:
        """Try up to ``iterations`` nonces starting at the wallet's cursor.

        The first qualifying hash mints ``pow_reward`` and stops. Running out
        of iterations is a normal outcome (found=False).
        """
        wallet = self.require(address)
        budget = iterations if iterations is not None else self.config.mining.default_iterations
        if budget < 0:
            raise WorldCommandError("iterations must be non-negative")
        bits = difficulty_bits if difficulty_bits is not None else self.config.mining.difficulty_bits

        start = wallet.mining_nonce
        for attempt in range(budget):
            nonce = start + attempt
            digest = pow_digest(address, nonce)
            if leading_zero_bits(digest) >= bits:
                reward = self.config.mining.pow_reward
                wallet.mining_nonce = nonce + 1
                balance = self.state.ledger.mint(address, reward, "mining")
                logger.info("Wallet %s mined nonce %d, +%d Qi", address, nonce, reward)
                return MiningResult(
                    address=address,
                    found=True,
                    nonce=nonce,
                    hash_hex=digest.hex(),
                    reward=reward,
                    attempts=attempt + 1,
                    balance=balance,
                )

        wallet.mining_nonce = start + budget
        logger.debug("Wallet %s found no solution in %d attempts", address, budget)
        return MiningResult(
            address=address,
            found=False,
            nonce=None,
            hash_hex=None,
            reward=0,
            attempts=budget,
            balance=self.state.ledger.get_balance(address),
        )

    # ===== SIGNING =====

    def sign(self, address: str, data: bytes) -> str:
        """Sign bytes with the wallet's private key (hex signature)."""
        private_hex = self.keyring.get(address)
        if private_hex is None:
            raise WorldCommandError(f"no private key for wallet {address}")
        private_key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_hex))
        return private_key.sign(data).hex()
