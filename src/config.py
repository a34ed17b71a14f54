"""Process-wide configuration for the Harimu runtime.

Values live in config/config.yaml and are validated by the pydantic schema
in config_schema.py when loaded. Engine components take an AppConfig
argument; this module is the place the command surface gets one from.

Usage:
    load_config()                         # once, at startup
    config = get_validated_config()       # typed access (preferred)
    bits = get("mining.difficulty_bits")  # dot-path access
    set_config_value("logging.level", "DEBUG")
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from .config_schema import AppConfig, load_validated_config, validate_config_dict

DEFAULT_CONFIG_PATH: Path = Path(__file__).parent.parent / "config" / "config.yaml"

# Raw YAML mapping and its validated form; both None until load_config()
_config: dict[str, Any] | None = None
_validated_config: AppConfig | None = None

_MISSING = object()


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load config/config.yaml (or ``config_path``) and validate it.

    Without an explicit path, a missing default file means "all defaults".

    Raises:
        FileNotFoundError: An explicitly given file does not exist.
        pydantic.ValidationError: Unknown keys or out-of-range values.
    """
    global _config, _validated_config

    if config_path is None and not DEFAULT_CONFIG_PATH.exists():
        raw: dict[str, Any] = {}
        validated = validate_config_dict(raw)
    else:
        path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        validated = load_validated_config(path)
        with open(path) as f:
            loaded = yaml.safe_load(f)
        raw = loaded if isinstance(loaded, dict) else {}

    _config, _validated_config = raw, validated
    return _config


def get_config() -> dict[str, Any]:
    """Raw YAML mapping, loading the default file on first use."""
    if _config is None:
        load_config()
    assert _config is not None
    return _config


def get_validated_config() -> AppConfig:
    """Typed configuration, loading the default file on first use."""
    if _validated_config is None:
        load_config()
    assert _validated_config is not None
    return _validated_config


def _walk(root: Any, keys: list[str]) -> Any:
    node = root
    for k in keys:
        if isinstance(node, dict):
            node = node.get(k, _MISSING)
        else:
            node = getattr(node, k, _MISSING)
        if node is _MISSING:
            return _MISSING
    return node


def get(key: str, default: Any = None) -> Any:
    """Value at a dot path such as ``"lifecycle.default_max_age"``.

    Keys absent from the YAML resolve to the schema default; keys the
    schema does not know return ``default``.
    """
    keys = key.split(".")
    value = _walk(get_config(), keys)
    if value is _MISSING:
        value = _walk(get_validated_config(), keys)
    return default if value is _MISSING else value


def set_config_value(key: str, value: Any) -> None:
    """Override one value (CLI flags). The result is validated before it is kept."""
    global _config, _validated_config

    updated = copy.deepcopy(get_config())
    *parents, leaf = key.split(".")
    target = updated
    for k in parents:
        target = target.setdefault(k, {})
    target[leaf] = value

    _validated_config = validate_config_dict(updated)
    _config = updated


def state_dir(override: str | None = None) -> Path:
    """Directory holding the durable registries."""
    return Path(override or get("persistence.state_dir"))


def reset_config() -> None:
    """Forget the loaded configuration (tests)."""
    global _config, _validated_config
    _config = None
    _validated_config = None
