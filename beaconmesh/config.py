"""Shared configuration loader for BeaconMesh."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, List, Mapping

import yaml

from .model import DEFAULT_MAX_CANDIDATES


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".beaconmesh.yaml"
ENV_PREFIX = "BEACONMESH_"
_CONFIG_PATH_OVERRIDE: Path | None = None

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


@dataclass
class MeshConfig:
    """Tunables for the codec, the handshake and the chat channel.

    Timeouts are in seconds.
    """

    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    ice_gathering_timeout: float = 10.0
    force_generate_delay: float = 5.0
    connection_timeout: float = 30.0
    max_candidates: int = DEFAULT_MAX_CANDIDATES
    use_compression: bool = True
    max_message_length: int = 1000
    data_channel_name: str = "beaconmesh-v2"
    large_token_warning: int = 2000

    def validate(self) -> "MeshConfig":
        if self.max_candidates < 0:
            raise ConfigurationError("max_candidates must not be negative")
        for name in ("ice_gathering_timeout", "force_generate_delay", "connection_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.force_generate_delay >= self.ice_gathering_timeout:
            raise ConfigurationError("force_generate_delay must be shorter than ice_gathering_timeout")
        if self.max_message_length <= 0:
            raise ConfigurationError("max_message_length must be positive")
        if not self.data_channel_name:
            raise ConfigurationError("data_channel_name must not be empty")
        return self


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML object with a 'mesh' section")
    return loaded


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce_servers(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ValueError(f"not a list of server URLs: {value!r}")


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "ice_servers": _coerce_servers,
    "ice_gathering_timeout": float,
    "force_generate_delay": float,
    "connection_timeout": float,
    "max_candidates": int,
    "use_compression": _coerce_bool,
    "max_message_length": int,
    "data_channel_name": str,
    "large_token_warning": int,
}


def _coerce(name: str, raw: Any, *, source: str) -> Any:
    try:
        return _COERCERS[name](raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw!r}") from exc


def load_mesh_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> MeshConfig:
    """Load configuration from overrides, ``BEACONMESH_*`` variables and YAML.

    Earlier sources win: overrides, then environment, then the ``mesh``
    section of the config file, then built-in defaults.
    """

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )

    file_config = _load_config_file(path, required=explicit_path)
    mesh_section = file_config.get("mesh", {})
    if mesh_section is None:
        mesh_section = {}
    if not isinstance(mesh_section, dict):
        raise ConfigurationError(f"Expected 'mesh' to be a mapping in {path}")

    unknown = set(mesh_section) - set(_COERCERS)
    if unknown:
        raise ConfigurationError(f"Unknown keys in {path} mesh section: {sorted(unknown)}")

    override_map = dict(overrides or {})
    resolved: dict[str, Any] = {}
    for option in fields(MeshConfig):
        name = option.name
        env_value = env_map.get(ENV_PREFIX + name.upper())
        if name in override_map and override_map[name] is not None:
            resolved[name] = _coerce(name, override_map[name], source="overrides")
        elif env_value is not None:
            resolved[name] = _coerce(name, env_value, source="environment")
        elif mesh_section.get(name) is not None:
            resolved[name] = _coerce(name, mesh_section[name], source=f"{path} mesh.{name}")

    return replace(MeshConfig(), **resolved).validate()
