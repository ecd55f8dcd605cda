"""
delayclaw/core/settings.py

Process-wide settings. Built once at startup and handed to
SettlementContext; nothing reads the environment after that.

Sources, lowest precedence first:
    1. dataclass defaults
    2. YAML settings file    (Settings.from_yaml)
    3. environment variables (ENV_VARS below)
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from delayclaw.core.exceptions import ConfigurationError


DEFAULT_RPC_URL    = "https://api.devnet.solana.com"
DEFAULT_PROGRAM_ID = "H8713ke9JBR9uHkahFMP15482LH2XkMdjNvmyEwRzeaX"

COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")

# Environment variable → Settings field
ENV_VARS: Dict[str, str] = {
    "SOLANA_RPC":            "rpc_url",
    "PROGRAM_ID":            "program_id",
    "ADMIN_KEYPAIR":         "admin_keypair_path",
    "RISK_POOL_VAULT":       "risk_pool_vault",
    "GITHUB_TOKEN":          "store_token",
    "GITHUB_FLIGHT_REPO":    "store_repo",
    "GITHUB_BRANCH":         "store_branch",
    "FLIGHT_BASE_PATH":      "store_base_path",
    "FLIGHT_NUMBER":         "flight_number",
    "ACTUAL_DEPARTURE_UNIX": "departure_time",
    "ACTUAL_DEPARTURE_ISO":  "departure_time",
    "FLIGHT_UPDATE_API_KEY": "update_api_key",
    "DELAYCLAW_COMMITMENT":  "commitment",
    "DELAYCLAW_JOURNAL":     "journal_path",
}

_INT_FIELDS   = {
    "max_broadcast_attempts",
    "max_confirmation_polls",
    "max_resubmits",
    "store_conflict_retries",
    "max_workers",
}
_FLOAT_FIELDS = {"backoff_base", "backoff_max", "batch_timeout", "http_timeout"}


@dataclass(frozen=True)
class Settings:
    # Ledger
    rpc_url:            str = DEFAULT_RPC_URL
    program_id:         str = DEFAULT_PROGRAM_ID
    admin_keypair_path: Optional[str] = None
    risk_pool_vault:    Optional[str] = None
    commitment:         str = "confirmed"

    # Flight metadata store
    store_token:        Optional[str] = None
    store_repo:         str = "alienx5499/zyura-flight-metadata"
    store_branch:       str = "main"
    store_base_path:    str = "flights"
    update_api_key:     Optional[str] = None

    # Single-flight operations
    flight_number:      Optional[str] = None
    departure_time:     Optional[str] = None

    # Submission bounds
    max_broadcast_attempts: int   = 3
    max_confirmation_polls: int   = 8
    backoff_base:           float = 0.5
    backoff_max:            float = 8.0
    max_resubmits:          int   = 2
    http_timeout:           float = 15.0

    # Orchestration
    batch_timeout:          float = 120.0
    store_conflict_retries: int   = 5
    max_workers:            int   = 4
    journal_path:           Optional[str] = None

    def __post_init__(self):
        if self.commitment not in COMMITMENT_LEVELS:
            raise ConfigurationError(
                f"commitment must be one of {COMMITMENT_LEVELS}",
                {"commitment": self.commitment},
            )
        if self.max_broadcast_attempts < 1 or self.max_confirmation_polls < 1:
            raise ConfigurationError("attempt bounds must be at least 1")
        if self.max_resubmits < 0 or self.store_conflict_retries < 1:
            raise ConfigurationError("retry bounds out of range")

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["Settings"] = None,
    ) -> "Settings":
        """Overlay recognised environment variables on base (or defaults)."""
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for var, attr in ENV_VARS.items():
            value = environ.get(var)
            if value:
                overrides[attr] = value
        return replace(base or cls(), **_coerce(overrides))

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Load a YAML mapping of field names, then apply the environment."""
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except OSError as exc:
            raise ConfigurationError(f"Cannot read settings file {path}: {exc}")
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {path} must hold a mapping")

        known   = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown settings in {path}: {', '.join(unknown)}"
            )
        return cls.from_env(environ, base=cls(**_coerce(data)))

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with credentials masked, for display."""
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        for secret in ("store_token", "update_api_key"):
            if out[secret]:
                out[secret] = "***"
        return out


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(values)
    try:
        for key in _INT_FIELDS & out.keys():
            out[key] = int(out[key])
        for key in _FLOAT_FIELDS & out.keys():
            out[key] = float(out[key])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid numeric setting: {exc}")
    if "departure_time" in out and out["departure_time"] is not None:
        out["departure_time"] = str(out["departure_time"])
    return out
