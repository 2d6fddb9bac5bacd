"""Config loading for SafeKeep.

Reads `.safekeep/config.yaml` (or `~/.safekeep/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid values.
If no config file is found, returns default values.

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. SAFEKEEP_CONFIG environment variable (if set)
  3. `.safekeep/config.yaml` (working directory — for development)
  4. `~/.safekeep/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  SAFEKEEP_PORT  — overrides server.port
  SAFEKEEP_OWNER — overrides guard.owner
  SAFEKEEP_CONFIG — sets an explicit config file path to try first
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Optional

import yaml

from safekeep.constants import DEFAULT_RECOVERY_WINDOW_S
from safekeep.guard.errors import InvalidAddressError
from safekeep.guard.identity import Address
from safekeep.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".safekeep/config.yaml",
    os.path.expanduser("~/.safekeep/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class GuardConfig:
    """AccountGuard construction parameters.

    owner:             First owner identity (0x-address). Required unless a
                       persisted snapshot already exists.
    address:           Custody account on the ledger; derived from owner if None.
    recovery_window_s: Recovery proposal lifetime. 0 disables expiry.
    """

    owner: Optional[str] = None
    address: Optional[str] = None
    recovery_window_s: int = DEFAULT_RECOVERY_WINDOW_S


@dataclass
class LedgerConfig:
    """In-memory ledger seeding."""

    opening_balance: int = 0  # credited to the custody account at startup


@dataclass
class AuditConfig:
    """Audit backend configuration."""

    enabled: bool = True
    retention_days: int = 90
    path: str = "~/.safekeep/audit.db"


@dataclass
class StateConfig:
    """Guard snapshot persistence."""

    path: str = "~/.safekeep/state.db"


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 4343


@dataclass
class Config:
    """Root configuration object populated from .safekeep/config.yaml."""

    version: int = SUPPORTED_CONFIG_VERSION
    guard: GuardConfig = field(default_factory=GuardConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    state: StateConfig = field(default_factory=StateConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @property
    def owner_address(self) -> Optional[Address]:
        """guard.owner parsed into an Address (None when unset)."""
        return Address.parse(self.guard.owner) if self.guard.owner else None

    @property
    def custody_address(self) -> Optional[Address]:
        return Address.parse(self.guard.address) if self.guard.address else None

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a malformed address or a negative window/balance.
        """
        guard_raw = raw.get("guard") or {}
        guard = GuardConfig(
            owner=_address_text(guard_raw.get("owner")),
            address=_address_text(guard_raw.get("address")),
            recovery_window_s=guard_raw.get("recovery_window_s", DEFAULT_RECOVERY_WINDOW_S),
        )
        for key in ("owner", "address"):
            value = getattr(guard, key)
            if value is not None:
                _require_address(f"guard.{key}", value)
        if not isinstance(guard.recovery_window_s, int) or guard.recovery_window_s < 0:
            _fail(
                f"CONFIG ERROR: guard.recovery_window_s must be a non-negative integer "
                f"(seconds), got {guard.recovery_window_s!r}."
            )

        ledger_raw = raw.get("ledger") or {}
        opening_balance = ledger_raw.get("opening_balance", 0)
        try:
            opening_balance = int(opening_balance)
        except (TypeError, ValueError):
            opening_balance = -1
        if opening_balance < 0:
            _fail(
                "CONFIG ERROR: ledger.opening_balance must be a non-negative integer, "
                f"got {ledger_raw.get('opening_balance')!r}."
            )
        ledger = LedgerConfig(opening_balance=opening_balance)

        audit_raw = raw.get("audit") or {}
        audit = AuditConfig(
            enabled=audit_raw.get("enabled", True),
            retention_days=audit_raw.get("retention_days", 90),
            path=audit_raw.get("path", "~/.safekeep/audit.db"),
        )

        state_raw = raw.get("state") or {}
        state = StateConfig(path=state_raw.get("path", "~/.safekeep/state.db"))

        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 4343),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            guard=guard,
            ledger=ledger,
            audit=audit,
            state=state,
            server=server,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate SafeKeep configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes an error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing/unsupported ``version``,
                       invalid field values, or invalid env overrides.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("SAFEKEEP_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "SafeKeep refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: SafeKeep is configured to bind on 0.0.0.0 (all interfaces). "
            "Recommended: use server.host: '127.0.0.1' behind an authenticating gateway."
        )
    if config.guard.recovery_window_s == 0:
        logger.warning("Recovery proposal expiry disabled (guard.recovery_window_s: 0)")

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        owner=config.guard.owner,
        recovery_window_s=config.guard.recovery_window_s,
        audit_enabled=config.audit.enabled,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply SAFEKEEP_PORT and SAFEKEEP_OWNER to a Config in-place.

    Raises:
        SystemExit(1): If an override is malformed.
    """
    env_port = os.environ.get("SAFEKEEP_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(
                "CONFIG ERROR: SAFEKEEP_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    env_owner = os.environ.get("SAFEKEEP_OWNER")
    if env_owner:
        _require_address("SAFEKEEP_OWNER", env_owner)
        config.guard.owner = env_owner


def _require_address(name: str, value: object) -> None:
    try:
        address = Address.parse(value)  # type: ignore[arg-type]
    except InvalidAddressError:
        _fail(f"CONFIG ERROR: {name} is not a valid 0x-prefixed 20-byte address: {value!r}")
    if address.is_zero:
        _fail(f"CONFIG ERROR: {name} cannot be the zero address.")


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


def _address_text(value: object) -> Optional[str]:
    """Undo YAML's reading of an unquoted 0x-address as a hex integer."""
    if isinstance(value, int) and not isinstance(value, bool):
        return f"0x{value:040x}"
    return value  # type: ignore[return-value]
