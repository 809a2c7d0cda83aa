"""
Ledger settings (``ledger_kernel.settings``).

Responsibility
--------------
Loads the kernel's runtime knobs from YAML and the environment into a
frozen ``LedgerSettings`` instance.

Precedence (lowest to highest)
------------------------------
1. ``defaults.yaml`` shipped inside the package.
2. A YAML file passed as ``path`` (or named by ``LEDGER_CONFIG``).
3. ``DATABASE_URL`` and ``LEDGER_LOG_LEVEL`` environment variables.

Failure modes
-------------
* Missing override file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key, bad type, or a tolerance other than the kernel's
  ``BALANCE_TOLERANCE``  -> ``ValueError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_kernel.domain.balance import BALANCE_TOLERANCE

DEFAULTS_PATH = Path(__file__).with_name("defaults.yaml")

_ENV_OVERRIDES = {
    "DATABASE_URL": "database_url",
    "LEDGER_LOG_LEVEL": "log_level",
}


@dataclass(frozen=True)
class LedgerSettings:
    """Runtime configuration for the ledger kernel."""

    database_url: str
    log_level: str = "INFO"
    balance_tolerance: Decimal = BALANCE_TOLERANCE
    allocation_max_attempts: int = 5
    list_default_page_size: int = 20
    list_max_page_size: int = 500
    account_default_page_size: int = 500
    account_max_page_size: int = 1000
    audit_default_page_size: int = 50
    audit_max_page_size: int = 200
    pool_size: int = 20
    max_overflow: int = 10

    def __post_init__(self) -> None:
        if self.balance_tolerance != BALANCE_TOLERANCE:
            raise ValueError(
                f"balance_tolerance must be {BALANCE_TOLERANCE}, "
                f"got {self.balance_tolerance}"
            )
        if self.allocation_max_attempts < 1:
            raise ValueError("allocation_max_attempts must be >= 1")
        for name in (
            "list_default_page_size",
            "list_max_page_size",
            "account_default_page_size",
            "account_max_page_size",
            "audit_default_page_size",
            "audit_max_page_size",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> LedgerSettings:
        """Build settings from a flat mapping, coercing scalar types."""
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(raw) - set(known))
        if unknown:
            raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for name, value in raw.items():
            declared = known[name].type
            if declared == "Decimal":
                try:
                    values[name] = Decimal(str(value))
                except InvalidOperation as exc:
                    raise ValueError(f"{name}: not a decimal: {value!r}") from exc
            elif declared == "int":
                if isinstance(value, bool):
                    raise ValueError(f"{name}: expected integer, got {value!r}")
                try:
                    values[name] = int(value)
                except (TypeError, ValueError) as exc:
                    raise ValueError(f"{name}: expected integer, got {value!r}") from exc
            else:
                values[name] = str(value)
        return cls(**values)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML file; an empty file yields an empty dict."""
    with open(path) as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> LedgerSettings:
    """Resolve settings from defaults, an optional YAML file and the environment."""
    env = os.environ if env is None else env

    raw = load_yaml_file(DEFAULTS_PATH)

    override_path = path or env.get("LEDGER_CONFIG")
    if override_path:
        raw.update(load_yaml_file(Path(override_path)))

    for env_key, setting in _ENV_OVERRIDES.items():
        if env.get(env_key):
            raw[setting] = env[env_key]

    return LedgerSettings.from_dict(raw)
