"""
Custody Configuration

Settings for vault deployment and for the ambient logging stack.

Every setting is a `ConfigValue` with a default, an optional ``CUSTODY_*``
environment binding and a validator. Values resolve in this order:

    1. Environment variable
    2. Runtime value (``ConfigManager.set`` or a YAML document)
    3. Default

YAML documents are checked against `CONFIG_FILE_SCHEMA` before any value
is applied, so a rejected document leaves the configuration untouched.

The vault section only describes how to *build* a vault. A running vault
keeps the `VaultSettings` snapshot it was constructed with.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import jsonschema
import yaml

from custody.hardening import UINT256_MAX, Validators

logger = logging.getLogger(__name__)

T = TypeVar("T")

BPS_DENOMINATOR = 10_000

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
LOG_FORMATS = ("json", "text")

# Searched by ConfigManager.load_defaults, later files override earlier ones.
DEFAULT_CONFIG_PATHS = (
    Path("custody.yaml"),
    Path("config/custody.yaml"),
    Path.home() / ".custody" / "config.yaml",
)


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """A value or document failed validation."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """One setting: default, environment binding, validator and change callbacks."""
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        raw = os.environ.get(self.env_var) if self.env_var else None
        if raw is not None:
            value = self._parse_env(raw)
            if self.validator is not None and not self.validator(value):
                raise ConfigValidationError(f"{self.env_var}={raw!r} rejected")
            return value
        return self.default if self._value is None else self._value

    def set(self, value: T) -> None:
        if self.validator is not None and not self.validator(value):
            raise ConfigValidationError(f"rejected value {value!r}")
        previous, self._value = self._value, value
        for callback in self._callbacks:
            callback(previous, value)

    def reset(self) -> None:
        self._value = None

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        self._callbacks.append(callback)

    def is_valid(self) -> bool:
        return self.validator is None or self.validator(self.get())

    def _parse_env(self, raw: str) -> T:
        if isinstance(self.default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")  # type: ignore
        if isinstance(self.default, int):
            try:
                return int(raw)  # type: ignore
            except ValueError as ex:
                raise ConfigValidationError(f"{self.env_var} must be an integer, got {raw!r}") from ex
        return raw  # type: ignore


def _setting(default: T, env_var: str, description: str, validator: Callable[[Any], bool]) -> Any:
    return field(default_factory=lambda: ConfigValue(
        default=default,
        env_var=env_var,
        description=description,
        validator=validator,
    ))


def _non_empty(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _int_between(low: int, high: Optional[int] = None) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        return value >= low and (high is None or value <= high)
    return check


def _treasury_account(value: Any) -> bool:
    return isinstance(value, str) and (value == "" or Validators.validate_address(value).is_valid)


@dataclass
class VaultConfig:
    """Parameters a vault is constructed with."""
    name: ConfigValue[str] = _setting(
        "CustodyVault", "CUSTODY_VAULT_NAME",
        "Instance name bound into every withdrawal signature", _non_empty,
    )
    version: ConfigValue[str] = _setting(
        "1", "CUSTODY_VAULT_VERSION",
        "Signing-domain version string", _non_empty,
    )
    chain_id: ConfigValue[int] = _setting(
        1, "CUSTODY_CHAIN_ID",
        "Environment identifier bound into every withdrawal signature", _int_between(0, UINT256_MAX),
    )
    fee_rate_bps: ConfigValue[int] = _setting(
        0, "CUSTODY_FEE_RATE_BPS",
        f"Deposit fee in basis points (0-{BPS_DENOMINATOR})", _int_between(0, BPS_DENOMINATOR),
    )
    treasury: ConfigValue[str] = _setting(
        "", "CUSTODY_TREASURY",
        "Treasury account receiving fees (empty for none)", _treasury_account,
    )


@dataclass
class ObservabilityConfig:
    """Logging output."""
    log_level: ConfigValue[str] = _setting(
        "info", "CUSTODY_LOG_LEVEL",
        "Log level (" + ", ".join(LOG_LEVELS) + ")", lambda x: x in LOG_LEVELS,
    )
    log_format: ConfigValue[str] = _setting(
        "json", "CUSTODY_LOG_FORMAT",
        "Log format (" + ", ".join(LOG_FORMATS) + ")", lambda x: x in LOG_FORMATS,
    )


def _settings(obj: Any, prefix: str = "") -> Iterator[Tuple[str, ConfigValue]]:
    """Yield ``(dotted_path, ConfigValue)`` for every leaf under ``obj``."""
    for f in fields(obj):
        path = f"{prefix}{f.name}"
        child = getattr(obj, f.name)
        if isinstance(child, ConfigValue):
            yield path, child
        elif is_dataclass(child):
            yield from _settings(child, path + ".")


def _nest(pairs: Iterator[Tuple[str, Any]]) -> Dict[str, Any]:
    tree: Dict[str, Any] = {}
    for path, value in pairs:
        *sections, leaf = path.split(".")
        node = tree
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = value
    return tree


@dataclass
class CustodyConfig:
    """Root configuration."""
    vault: VaultConfig = field(default_factory=VaultConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        return _nest((path, setting.get()) for path, setting in _settings(self))

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False)


CONFIG_FILE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "vault": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "version": {"type": "string", "minLength": 1},
                "chain_id": {"type": "integer", "minimum": 0},
                "fee_rate_bps": {"type": "integer", "minimum": 0, "maximum": BPS_DENOMINATOR},
                "treasury": {"type": "string", "pattern": "^(0x[0-9a-fA-F]{40})?$"},
            },
        },
        "observability": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "log_level": {"enum": list(LOG_LEVELS)},
                "log_format": {"enum": list(LOG_FORMATS)},
            },
        },
    },
}


class ConfigManager:
    """
    Process-wide owner of the active `CustodyConfig`.

    A singleton: every ``ConfigManager()`` call returns the same instance.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._config = CustodyConfig()
                instance._loaded_from = []
                cls._instance = instance
            return cls._instance

    @property
    def config(self) -> CustodyConfig:
        return self._config

    @property
    def loaded_from(self) -> List[Path]:
        """Files applied since the last reset."""
        return list(self._loaded_from)

    def load_from_file(self, path: Union[str, Path]) -> None:
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        document = yaml.safe_load(path.read_text())
        if document:
            self.apply_dict(document, source=str(path))
        self._loaded_from.append(path)

    def load_defaults(self) -> None:
        """Apply whichever of `DEFAULT_CONFIG_PATHS` exist."""
        for path in DEFAULT_CONFIG_PATHS:
            if path.is_file():
                logger.debug("loading config file %s", path)
                self.load_from_file(path)

    def apply_dict(self, data: Dict[str, Any], source: str = "<dict>") -> None:
        """Check ``data`` against the file schema, then apply every value in it."""
        try:
            jsonschema.validate(instance=data, schema=CONFIG_FILE_SCHEMA)
        except jsonschema.ValidationError as ex:
            where = ".".join(str(p) for p in ex.absolute_path) or "<root>"
            raise ConfigValidationError(f"{source}: {where}: {ex.message}") from ex

        for section, values in data.items():
            for key, value in values.items():
                self.set(f"{section}.{key}", value)

    def set(self, path: str, value: Any) -> None:
        setting = self._resolve(path)
        if not isinstance(setting, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        try:
            setting.set(value)
        except ConfigValidationError as ex:
            raise ConfigValidationError(f"{path}: {ex}") from ex

    def get(self, path: str) -> Any:
        """Resolved value at ``path``, e.g. ``get("vault.chain_id")``."""
        node = self._resolve(path)
        return node.get() if isinstance(node, ConfigValue) else node

    def _resolve(self, path: str) -> Any:
        node: Any = self._config
        for part in path.split("."):
            if not is_dataclass(node) or part not in {f.name for f in fields(node)}:
                raise ConfigError(f"Invalid config path: {path}")
            node = getattr(node, part)
        return node

    def reset(self) -> None:
        """Drop runtime values and loaded files; environment bindings still apply."""
        self._config = CustodyConfig()
        self._loaded_from = []

    def validate(self) -> List[str]:
        """Every problem with the resolved configuration, as ``"path: reason"`` strings."""
        errors: List[str] = []
        for path, setting in _settings(self._config):
            try:
                if not setting.is_valid():
                    errors.append(f"{path}: validation failed for value {setting.get()!r}")
            except ConfigError as ex:
                errors.append(f"{path}: {ex}")

        vault = self._config.vault
        try:
            fee_charged = vault.fee_rate_bps.get() > 0
        except ConfigError:
            fee_charged = False
        if fee_charged and not vault.treasury.get():
            errors.append("vault.treasury: required when vault.fee_rate_bps > 0")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Describe every setting: type, default, description and env var."""
        def describe(setting: ConfigValue) -> Dict[str, Any]:
            entry = {
                "type": type(setting.default).__name__,
                "default": str(setting.default),
                "description": setting.description,
            }
            if setting.env_var:
                entry["env_var"] = setting.env_var
            return entry

        return {"properties": _nest((path, describe(s)) for path, s in _settings(self._config))}


@dataclass(frozen=True)
class VaultSettings:
    """Immutable construction parameters for a CustodyVault."""
    name: str = "CustodyVault"
    version: str = "1"
    chain_id: int = 1
    fee_rate_bps: int = 0
    treasury: Optional[str] = None

    def __post_init__(self):
        if not _int_between(0, UINT256_MAX)(self.chain_id):
            raise ConfigError(f"chain_id must be an unsigned 256-bit integer, got {self.chain_id!r}")
        if not _int_between(0, BPS_DENOMINATOR)(self.fee_rate_bps):
            raise ConfigError(f"fee_rate_bps must be an integer within 0..{BPS_DENOMINATOR}, got {self.fee_rate_bps!r}")
        if self.treasury is not None:
            checked = Validators.validate_address(self.treasury, "treasury")
            if not checked.is_valid:
                raise ConfigError(f"treasury: {checked.errors[0].message}")
            object.__setattr__(self, "treasury", checked.sanitized_value)
        if self.fee_rate_bps and self.treasury is None:
            raise ConfigError("a treasury account is required when fee_rate_bps > 0")
        if not (self.name and self.version):
            raise ConfigError("name and version must be non-empty")

    @classmethod
    def from_config(cls, config: Optional[CustodyConfig] = None) -> "VaultSettings":
        """Snapshot the vault section of ``config`` (the active one by default)."""
        section = (config or get_config()).vault
        return cls(
            name=section.name.get(),
            version=section.version.get(),
            chain_id=section.chain_id.get(),
            fee_rate_bps=section.fee_rate_bps.get(),
            treasury=section.treasury.get() or None,
        )


def get_config() -> CustodyConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
