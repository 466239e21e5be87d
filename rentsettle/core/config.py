"""
rentsettle/core/config.py

Settlement configuration.

Sources, lowest to highest precedence:
    1. Defaults below
    2. YAML file        SettlementConfig.from_yaml(path)
    3. Environment      SettlementConfig.from_env(base)

    RENTSETTLE_ESCROW_TIMEOUT_BLOCKS
    RENTSETTLE_MIN_ESCROW_AMOUNT
    RENTSETTLE_DISPUTE_TIMEOUT

Transition functions never read configuration. Only the booking-layer
boundary (SettlementEngine) and the CLI do.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from rentsettle.core.exceptions import ConfigError


# ~1 day at 10 min/block
DEFAULT_ESCROW_TIMEOUT_BLOCKS = 144
DEFAULT_DISPUTE_TIMEOUT       = 144
# 0.0001 coin in smallest units
DEFAULT_MIN_ESCROW_AMOUNT     = 10_000

_ENV_PREFIX = "RENTSETTLE_"


@dataclass(frozen=True)
class SettlementConfig:
    escrow_timeout_blocks: int = DEFAULT_ESCROW_TIMEOUT_BLOCKS
    min_escrow_amount:     int = DEFAULT_MIN_ESCROW_AMOUNT
    dispute_timeout:       int = DEFAULT_DISPUTE_TIMEOUT

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigError(
                    f"{f.name} must be a non-negative integer",
                    {"value": repr(value)},
                )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SettlementConfig":
        known   = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                {"valid": ", ".join(sorted(known))},
            )
        return cls(**dict(data))

    @classmethod
    def from_yaml(cls, path: Path) -> "SettlementConfig":
        """Load configuration from a YAML mapping. Empty file → defaults."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to read config {path}: {exc}") from exc

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(
                f"Config {path} must contain a mapping, got {type(data).__name__}"
            )
        return cls.from_mapping(data)

    @classmethod
    def from_env(
        cls,
        base:    Optional["SettlementConfig"] = None,
        environ: Optional[Mapping[str, str]]  = None,
    ) -> "SettlementConfig":
        """Overlay RENTSETTLE_* environment variables onto base (or defaults)."""
        base    = base or cls()
        environ = os.environ if environ is None else environ

        overrides: Dict[str, int] = {}
        for f in fields(cls):
            raw = environ.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = int(raw)
            except ValueError:
                raise ConfigError(
                    f"{_ENV_PREFIX}{f.name.upper()} must be an integer, got {raw!r}"
                )
        return replace(base, **overrides)
