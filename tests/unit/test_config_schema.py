"""Tests for Pydantic config schema validation and the config loader."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from pydantic import ValidationError

from src import config as config_module
from src.config_schema import AppConfig, load_validated_config, validate_config_dict


@pytest.fixture(autouse=True)
def fresh_config() -> Iterator[None]:
    """Loaded config is module-global; isolate each test."""
    config_module.reset_config()
    yield
    config_module.reset_config()


class TestValidConfig:
    """Test that valid configs are accepted."""

    def test_empty_config_uses_defaults(self) -> None:
        config = validate_config_dict({})

        assert config.world.bounds == 64
        assert config.costs.write == 1
        assert config.costs.read == 0
        assert config.mining.difficulty_bits == 16
        assert config.mining.pow_reward == 5
        assert config.lifecycle.default_max_age == 112
        assert config.brain.mode == "loop"
        assert config.brain.timeout_seconds == 15.0

    def test_partial_config_merges_defaults(self) -> None:
        config = validate_config_dict({"world": {"bounds": 10}})

        assert config.world.bounds == 10
        assert config.world.scan_range == 8

    def test_shipped_config_loads(self) -> None:
        path = Path(__file__).parent.parent.parent / "config" / "config.yaml"

        config = load_validated_config(path)

        assert isinstance(config, AppConfig)
        assert config.persistence.state_dir == ".harimu"


class TestInvalidConfig:
    """Test that typos and bad values fail fast."""

    def test_unknown_section_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"wrold": {}})

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"mining": {"difficulty": 3}})

    @pytest.mark.parametrize(
        "section,values",
        [
            ("world", {"bounds": 0}),
            ("mining", {"difficulty_bits": 257}),
            ("mining", {"pow_reward": 0}),
            ("lifecycle", {"child_qi_fraction": 1.5}),
            ("brain", {"mode": "telepathy"}),
            ("brain", {"timeout_seconds": 0}),
            ("logging", {"level": "LOUD"}),
        ],
    )
    def test_out_of_range(self, section: str, values: dict) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({section: values})

    def test_move_radius_must_fit_world(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"world": {"bounds": 1, "max_move_radius": 3}})

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_validated_config(tmp_path / "absent.yaml")


class TestConfigLoader:
    """Tests for the module-level loader in src.config."""

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("mining:\n  pow_reward: 9\n")

        raw = config_module.load_config(str(path))

        assert raw == {"mining": {"pow_reward": 9}}
        assert config_module.get_validated_config().mining.pow_reward == 9

    def test_get_falls_back_to_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("mining:\n  pow_reward: 9\n")
        config_module.load_config(str(path))

        assert config_module.get("mining.pow_reward") == 9
        assert config_module.get("mining.difficulty_bits") == 16
        assert config_module.get("mining.nonsense", "fallback") == "fallback"

    def test_set_config_value_revalidates(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("{}\n")
        config_module.load_config(str(path))

        config_module.set_config_value("logging.level", "DEBUG")

        assert config_module.get_validated_config().logging.level == "DEBUG"
        with pytest.raises(ValidationError):
            config_module.set_config_value("logging.level", "LOUD")

    def test_empty_file_is_valid(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert config_module.load_config(str(path)) == {}
        assert config_module.get_validated_config().world.bounds == 64

    def test_state_dir_from_file_default_or_override(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("persistence:\n  state_dir: /srv/harimu\n")
        config_module.load_config(str(path))

        assert config_module.state_dir() == Path("/srv/harimu")
        assert config_module.state_dir("elsewhere") == Path("elsewhere")

        path.write_text("{}\n")
        config_module.load_config(str(path))
        assert config_module.state_dir() == Path(".harimu")
