"""
Configuration Loader (``pharmatrace.config.loader``).

Responsibility
--------------
Reads the YAML configuration file, applies environment overrides and
parses the result into a frozen ``IndexerConfig``.

Invariants enforced
-------------------
* Every value is type-checked; a bad value raises ``ConfigError`` naming
  the offending key.  Unknown keys are rejected.
* ``postgres://`` / ``postgresql://`` URLs are normalized to the psycopg2
  driver URL.
* ``compute_checksum`` gives a deterministic identity for the effective
  configuration (logged at startup).

Failure modes
-------------
* Missing file given explicitly  -> ``ConfigError``.
* Malformed YAML  -> ``ConfigError`` wrapping ``yaml.YAMLError``.
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from pharmatrace.config.schema import AlertSettings, IndexerConfig, RetrySettings, TraceSettings
from pharmatrace.domain.status import ParticipantRole
from pharmatrace.exceptions import ConfigError
from pharmatrace.logging_config import get_logger

logger = get_logger("config")

CONFIG_PATH_ENV = "PHARMATRACE_CONFIG"

# Environment variable -> config key (later entries win)
ENV_OVERRIDES: tuple[tuple[str, str], ...] = (
    ("DATABASE_URL", "database_url"),
    ("PHARMATRACE_DATABASE_URL", "database_url"),
    ("CONTRACT_ADDRESS", "contract_address"),
    ("CHAIN_ID", "chain_id"),
    ("DEPLOYMENT_BLOCK", "deployment_block"),
    ("SYNC_BATCH_SIZE", "chunk_size"),
    ("IPFS_GATEWAY", "ipfs_gateway"),
    ("LOG_LEVEL", "log_level"),
)

_SECTIONS = {"retry": RetrySettings, "alerts": AlertSettings, "trace": TraceSettings}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError("path", f"configuration file not found: {path}") from None
    except yaml.YAMLError as exc:
        raise ConfigError("path", f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("path", f"{path} must contain a mapping at top level")
    return data


def normalize_database_url(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _as_int(key: str, value: Any, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(key, "expected an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(key, f"expected an integer, got {value!r}") from None
    if minimum is not None and number < minimum:
        raise ConfigError(key, f"must be >= {minimum}")
    return number


def _as_float(key: str, value: Any, minimum: float = 0.0) -> float:
    if isinstance(value, bool):
        raise ConfigError(key, "expected a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(key, f"expected a number, got {value!r}") from None
    if number < minimum:
        raise ConfigError(key, f"must be >= {minimum}")
    return number


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigError(key, f"expected a boolean, got {value!r}")


def _as_optional_str(key: str, value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(key, f"expected a string, got {value!r}")
    return value


def _parse_section(name: str, data: Any):
    cls = _SECTIONS[name]
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigError(name, "expected a mapping")
    known = {f.name: f for f in fields(cls)}
    values: dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{name}.{key}"
        if key not in known:
            raise ConfigError(dotted, "unknown key")
        if known[key].type == "int":
            values[key] = _as_int(dotted, value, minimum=1)
        else:
            values[key] = _as_float(dotted, value)
    return cls(**values)


def _parse_participants(data: Any) -> dict[str, ParticipantRole]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("participants", "expected a mapping of address to role")
    out: dict[str, ParticipantRole] = {}
    for address, role in data.items():
        try:
            out[str(address).lower()] = ParticipantRole(str(role).upper())
        except ValueError:
            raise ConfigError(f"participants.{address}", f"unknown role {role!r}") from None
    return out


def parse_config(data: Mapping[str, Any]) -> IndexerConfig:
    """Build an IndexerConfig from a plain mapping (YAML + overrides)."""
    known = {f.name for f in fields(IndexerConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(sorted(unknown)[0], "unknown key")

    values: dict[str, Any] = {}
    if "database_url" in data:
        url = _as_optional_str("database_url", data["database_url"])
        if url is None:
            raise ConfigError("database_url", "must not be empty")
        values["database_url"] = normalize_database_url(url)
    if "contract_address" in data:
        address = _as_optional_str("contract_address", data["contract_address"])
        values["contract_address"] = address.lower() if address else None
    if data.get("chain_id") is not None:
        values["chain_id"] = _as_int("chain_id", data["chain_id"], minimum=0)
    if "deployment_block" in data:
        values["deployment_block"] = _as_int("deployment_block", data["deployment_block"], minimum=0)
    if "chunk_size" in data:
        values["chunk_size"] = _as_int("chunk_size", data["chunk_size"], minimum=1)
    for key in ("poll_interval_seconds", "stale_sync_after_seconds"):
        if key in data:
            values[key] = _as_float(key, data[key])
    if "reset_on_rewind" in data:
        values["reset_on_rewind"] = _as_bool("reset_on_rewind", data["reset_on_rewind"])
    for key in ("ipfs_gateway", "ledger_factory"):
        if key in data:
            values[key] = _as_optional_str(key, data[key])
    if values.get("ledger_factory") and ":" not in values["ledger_factory"]:
        raise ConfigError("ledger_factory", "expected 'module:callable'")
    if "log_level" in data:
        level = str(data["log_level"]).upper()
        if level not in _LOG_LEVELS:
            raise ConfigError("log_level", f"unknown level {data['log_level']!r}")
        values["log_level"] = level
    if "participants" in data:
        values["participants"] = _parse_participants(data["participants"])
    for section in _SECTIONS:
        if section in data:
            values[section] = _parse_section(section, data[section])

    return IndexerConfig(**values)


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    merged = dict(data)
    for var, key in ENV_OVERRIDES:
        if env.get(var):
            merged[key] = env[var]
    return merged


def compute_checksum(config: IndexerConfig) -> str:
    """SHA-256 of the effective configuration with the database URL masked."""
    payload = asdict(config)
    payload["database_url"] = payload["database_url"].split("@")[-1]
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> IndexerConfig:
    """
    Load the effective configuration.

    Resolution order: defaults, then the YAML file (``path`` or
    ``$PHARMATRACE_CONFIG``), then environment overrides.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    source = path or env.get(CONFIG_PATH_ENV)
    if source:
        data = load_yaml_file(Path(source))

    config = parse_config(apply_env_overrides(data, env))
    logger.info(
        "config_loaded",
        extra={
            "config_path": str(source) if source else None,
            "checksum": compute_checksum(config),
            "chain_id": config.chain_id,
            "contract_address": config.contract_address,
        },
    )
    return config
