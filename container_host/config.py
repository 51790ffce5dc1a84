"""Configuration loading and validation for container-host."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from container_host.constants import ARCH_ALIASES, DEFAULT_CONFIG_NAME, DEFAULTS
from container_host.exceptions import ConfigurationError
from container_host.models import HostConfig
from container_host.utils import get_env, log, parse_int

# Config-file section -> {camelCase key -> HostConfig field}. None marks keys
# accepted for compatibility but not used.
FILE_KEYS: Dict[str, Dict[str, Optional[str]]] = {
    "vm": {
        "architecture": "arch",
        "version": "version",
        "memory": "memory_mb",
        "cpus": "cpus",
        "instances": "instances",
        "image": None,
    },
    "network": {
        "sshPort": "ssh_port",
        "vncPort": "vnc_port",
        "dockerPort": "docker_port",
        "httpPort": "http_port",
        "kubernetesPort": "kubernetes_port",
        "k0sPort": "k0s_port",
    },
    "ssh": {
        "publicKeyPath": "public_key_path",
        "privateKeyPath": "private_key_path",
        "corePassword": "core_password",
    },
    "qemu": {
        "enableAcceleration": "enable_acceleration",
        "customArgs": "custom_args",
    },
    "debug": {
        "printIgnitionConfig": "print_ignition_config",
        "verbose": "verbose",
    },
    "download": {
        "retries": "download_retries",
        "timeout": "download_timeout",
        "stageCompressed": "stage_compressed",
    },
}

_STRING_FIELDS = {"arch", "version", "public_key_path", "private_key_path"}
_PORT_FIELDS = {"ssh_port", "vnc_port", "docker_port", "http_port", "kubernetes_port", "k0s_port"}
_INT_FIELDS = {"memory_mb", "cpus", "instances", "download_retries", "download_timeout"}
_BOOL_FIELDS = {"enable_acceleration", "print_ignition_config", "verbose", "stage_compressed"}


def default_config_path(root_dir: Path) -> Path:
    override = get_env("CONTAINER_HOST_CONFIG")
    if override:
        return Path(override)
    return root_dir / DEFAULT_CONFIG_NAME


def read_config_file(path: Path) -> Dict[str, Any]:
    """Parse the config file. JSON is valid YAML, so both formats load."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Failed to read config file {path}: {exc}") from exc
    log("INFO", f"Found config file: {path} ({len(text)} bytes)")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level")
    return data


def flatten_file_config(data: Mapping[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for section, body in data.items():
        keys = FILE_KEYS.get(section)
        if keys is None:
            log("WARN", f"Ignoring unknown config section '{section}'")
            continue
        if not isinstance(body, dict):
            raise ConfigurationError(f"Config section '{section}' must be a mapping")
        for key, raw in body.items():
            if key not in keys:
                log("WARN", f"Ignoring unknown config key '{section}.{key}'")
                continue
            target = keys[key]
            if target is None:
                log("DEBUG", f"Config key '{section}.{key}' is derived automatically; ignored")
                continue
            values[target] = raw
    return values


def _coerce(name: str, raw: Any) -> Any:
    if name in _STRING_FIELDS:
        if not isinstance(raw, str) or not raw.strip():
            raise ConfigurationError(f"{name} must be a non-empty string (got {raw!r})")
        return raw.strip()
    if name in _PORT_FIELDS:
        if isinstance(raw, bool) or not isinstance(raw, (str, int)):
            raise ConfigurationError(f"{name} must be a string or integer (got {raw!r})")
        # Parsed at port derivation time; keep as configured.
        return str(raw).strip()
    if name in _INT_FIELDS:
        return parse_int(name, raw, min_val=1)
    if name in _BOOL_FIELDS:
        if not isinstance(raw, bool):
            raise ConfigurationError(f"{name} must be true or false (got {raw!r})")
        return raw
    if name == "custom_args":
        if raw is None:
            return ()
        if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
            raise ConfigurationError(f"customArgs must be a list of strings (got {raw!r})")
        return tuple(raw)
    if name == "core_password":
        if raw is None or raw == "":
            return None
        if not isinstance(raw, str):
            raise ConfigurationError("corePassword must be a string")
        return raw
    raise ConfigurationError(f"Unknown configuration field '{name}'")


def normalize_arch(arch: str) -> str:
    lowered = arch.strip().lower()
    return ARCH_ALIASES.get(lowered, lowered)


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Optional[str]]] = None,
    root_dir: Optional[Path] = None,
) -> HostConfig:
    """Merge defaults, the config file (when present) and CLI overrides into a HostConfig."""
    root = (root_dir or Path.cwd()).resolve()
    config_path = path if path is not None else default_config_path(root)

    values: Dict[str, Any] = dict(DEFAULTS)
    values["custom_args"] = ()
    values["core_password"] = None

    if config_path.exists():
        for name, raw in flatten_file_config(read_config_file(config_path)).items():
            values[name] = _coerce(name, raw)
    elif path is not None:
        raise ConfigurationError(f"Config file not found: {config_path}")
    else:
        log("WARN", f"Config file {config_path} not found, using default values")

    for name, raw in (overrides or {}).items():
        if raw is None:
            continue
        value = _coerce(name, raw)
        if value != values.get(name):
            log("INFO", f"Command-line override: {name} changed from {values.get(name)} to {value}")
        values[name] = value

    values["arch"] = normalize_arch(values["arch"])
    return HostConfig(root_dir=root, **values)
