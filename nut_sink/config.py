"""Process configuration, loaded once from the environment or a ``.env`` file."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from dotenv import load_dotenv

from .crypto import validate_seed_phrase
from .types import ConfigurationError

MAINTENANCE_KEYS = ("DATABASE_PATH", "SEED_PHRASE")
REQUIRED_KEYS = MAINTENANCE_KEYS + ("LIGHTNING_ADDRESS", "MELT_THRESHOLDS", "LOG_PATH")

DEFAULT_MINT_TIMEOUT = 30.0
DEFAULT_PENDING_STALE_SECONDS = 600.0


@dataclass(frozen=True)
class DonationConfig:
    database_path: str
    seed_phrase: str = field(repr=False)
    lightning_address: str
    melt_thresholds: Mapping[str, int]
    log_path: str
    default_melt_threshold: int | None = None
    mint_timeout: float = DEFAULT_MINT_TIMEOUT
    pending_stale_seconds: float = DEFAULT_PENDING_STALE_SECONDS

    def __post_init__(self) -> None:
        object.__setattr__(self, "seed_phrase", validate_seed_phrase(self.seed_phrase))
        object.__setattr__(self, "melt_thresholds", MappingProxyType(dict(self.melt_thresholds)))
        if not self.lightning_address.strip():
            raise ConfigurationError("Lightning address is empty")
        for unit, threshold in self.melt_thresholds.items():
            if threshold <= 0:
                raise ConfigurationError(f"Melt threshold for {unit} must be positive")
        if self.default_melt_threshold is not None and self.default_melt_threshold <= 0:
            raise ConfigurationError("Default melt threshold must be positive")
        if self.mint_timeout <= 0:
            raise ConfigurationError("Mint timeout must be positive")

    def threshold_for(self, unit: str) -> int | None:
        """Melt threshold for a unit, falling back to the default."""
        return self.melt_thresholds.get(unit, self.default_melt_threshold)


@dataclass(frozen=True)
class MaintenanceConfig:
    """What the ledger maintenance commands need: the ledger and the seed."""

    database_path: str
    seed_phrase: str = field(repr=False)
    mint_timeout: float = DEFAULT_MINT_TIMEOUT
    pending_stale_seconds: float = DEFAULT_PENDING_STALE_SECONDS

    def __post_init__(self) -> None:
        object.__setattr__(self, "seed_phrase", validate_seed_phrase(self.seed_phrase))
        if self.mint_timeout <= 0:
            raise ConfigurationError("Mint timeout must be positive")


def parse_thresholds(value: str) -> dict[str, int]:
    """Parse ``sat=1000,usd=500`` into a unit -> threshold mapping."""
    thresholds: dict[str, int] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        unit, sep, amount = item.partition("=")
        unit = unit.strip().lower()
        if not sep or not unit:
            raise ConfigurationError(f"Malformed melt threshold entry: {item!r}")
        thresholds[unit] = _parse_int(amount, f"melt threshold for {unit}")
    return thresholds


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value.strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}: {value!r}") from e


def _parse_float(value: str, name: str) -> float:
    try:
        return float(value.strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}: {value!r}") from e


def load_config(
    environ: Mapping[str, str] | None = None, *, env_file: str | Path | None = None
) -> DonationConfig:
    """Build the configuration from the environment.

    Variables already set in the process environment win over the ``.env``
    file. Passing ``environ`` skips the environment and ``.env`` entirely.

    Raises:
        ConfigurationError: If a required key is missing or a value is invalid
    """
    environ = _read_environ(environ, env_file, REQUIRED_KEYS)
    default_threshold = environ.get("DEFAULT_MELT_THRESHOLD", "").strip()

    return DonationConfig(
        database_path=environ["DATABASE_PATH"],
        seed_phrase=environ["SEED_PHRASE"],
        lightning_address=environ["LIGHTNING_ADDRESS"].strip(),
        melt_thresholds=parse_thresholds(environ["MELT_THRESHOLDS"]),
        log_path=environ["LOG_PATH"],
        default_melt_threshold=(
            _parse_int(default_threshold, "default melt threshold") if default_threshold else None
        ),
        mint_timeout=_mint_timeout(environ),
        pending_stale_seconds=_pending_stale_seconds(environ),
    )


def load_maintenance_config(
    environ: Mapping[str, str] | None = None, *, env_file: str | Path | None = None
) -> MaintenanceConfig:
    """Like :func:`load_config`, but only ``DATABASE_PATH`` and ``SEED_PHRASE`` are required."""
    environ = _read_environ(environ, env_file, MAINTENANCE_KEYS)
    return MaintenanceConfig(
        database_path=environ["DATABASE_PATH"],
        seed_phrase=environ["SEED_PHRASE"],
        mint_timeout=_mint_timeout(environ),
        pending_stale_seconds=_pending_stale_seconds(environ),
    )


def _read_environ(
    environ: Mapping[str, str] | None, env_file: str | Path | None, required: tuple[str, ...]
) -> Mapping[str, str]:
    if environ is None:
        load_dotenv(env_file or Path.cwd() / ".env", override=False)
        environ = os.environ

    missing = [key for key in required if key not in environ]
    if missing:
        raise ConfigurationError(f"Missing configuration keys: {', '.join(missing)}")
    return environ


def _mint_timeout(environ: Mapping[str, str]) -> float:
    value = environ.get("MINT_TIMEOUT", "").strip()
    return _parse_float(value, "mint timeout") if value else DEFAULT_MINT_TIMEOUT


def _pending_stale_seconds(environ: Mapping[str, str]) -> float:
    value = environ.get("PENDING_STALE_SECONDS", "").strip()
    return _parse_float(value, "pending stale seconds") if value else DEFAULT_PENDING_STALE_SECONDS
