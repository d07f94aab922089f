"""Configuration loader for devboxctl.

Configuration values are resolved from multiple sources, later sources
overriding earlier ones:

1. Built-in defaults.
2. ``/etc/devboxctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEVBOX_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEVBOX_PORTS__BASE=36022
    export DEVBOX_RESOURCES__MEMORY=2g

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. A handful of legacy variables from the shell installer
(``DEVBOX_WORKDIR``, ``DEVBOX_MEM`` ...) are still honoured as aliases. The
resulting configuration is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load devboxctl configuration. Install with "
        "`pip install devboxctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DEVBOX_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
ASSUME_YES_ENV_VAR = f"{ENV_PREFIX}ASSUME_YES"
RESERVED_PORTS_ENV_VAR = f"{ENV_PREFIX}RESERVED_HOST_PORTS"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    ASSUME_YES_ENV_VAR,
    RESERVED_PORTS_ENV_VAR,
    f"{ENV_PREFIX}AUTO",
    f"{ENV_PREFIX}DEBUG",
}

# Flat variables understood by the legacy shell installer, mapped onto nested keys.
LEGACY_ENV_ALIASES: dict[str, tuple[str, ...]] = {
    f"{ENV_PREFIX}WORKDIR": ("workdir",),
    f"{ENV_PREFIX}NET_NAME": ("network",),
    f"{ENV_PREFIX}PORT_BASE": ("ports", "base"),
    f"{ENV_PREFIX}IMAGE_NAME": ("image", "repository"),
    f"{ENV_PREFIX}IMAGE_TAG": ("image", "tag"),
    f"{ENV_PREFIX}MEM": ("resources", "memory"),
    f"{ENV_PREFIX}CPUS": ("resources", "cpus"),
    f"{ENV_PREFIX}PIDS": ("resources", "pids"),
}

_TRUTHY = {"1", "y", "yes", "true", "on"}
_MEMORY_PATTERN = re.compile(r"^[0-9]+[bkmgBKMG]?$")
_IMAGE_REPOSITORY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._/-]*$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """SSH port allocation policy."""

    base: int = 30022
    max_tries: int = 80
    step: int = 100
    reserved: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base": self.base,
            "max_tries": self.max_tries,
            "step": self.step,
            "reserved": list(self.reserved),
        }


@dataclass(frozen=True)
class ResourcesConfig:
    """Default resource ceilings applied to new instances."""

    memory: str = "1g"
    cpus: str = "1.0"
    pids: int = 256

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"memory": self.memory, "cpus": self.cpus, "pids": self.pids}


@dataclass(frozen=True)
class ImageConfig:
    """Image naming used when an instance does not request an explicit image."""

    repository: str = "acm-lite"
    tag: str = "latest"

    def reference_for(self, template: str, *, default_template: str) -> str:
        """Return the image reference built from *template*."""
        repository = self.repository
        if template != default_template:
            repository = f"{repository}-{template}"
        return f"{repository}:{self.tag}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"repository": self.repository, "tag": self.tag}


@dataclass(frozen=True)
class ProxyConfig:
    """Forwarding proxy container settings."""

    image: str = "alpine/socat:1.8.0.0"
    memory: str = "64m"
    cpus: str = "0.2"
    pids: int = 64

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image": self.image,
            "memory": self.memory,
            "cpus": self.cpus,
            "pids": self.pids,
        }


@dataclass(frozen=True)
class ReadinessConfig:
    """Bounded polling used while waiting for the in-guest SSH daemon."""

    attempts: int = 60
    interval: float = 0.5
    probe_timeout: float = 0.3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "attempts": self.attempts,
            "interval": self.interval,
            "probe_timeout": self.probe_timeout,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime integration values."""

    docker_bin: str = "docker"
    socket: Path = Path("/var/run/docker.sock")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "socket": str(self.socket)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for devboxctl."""

    config_file: Path
    workdir: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    network: str
    default_template: str
    login_user: str
    lock_timeout: float
    assume_yes: bool
    ports: PortsConfig
    resources: ResourcesConfig
    image: ImageConfig
    proxy: ProxyConfig
    readiness: ReadinessConfig
    docker: DockerConfig

    def image_for(self, template: str) -> str:
        """Return the default image reference for *template*."""
        return self.image.reference_for(template, default_template=self.default_template)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "workdir": str(self.workdir),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "network": self.network,
            "default_template": self.default_template,
            "login_user": self.login_user,
            "lock_timeout": self.lock_timeout,
            "assume_yes": self.assume_yes,
            "ports": self.ports.to_dict(),
            "resources": self.resources.to_dict(),
            "image": self.image.to_dict(),
            "proxy": self.proxy.to_dict(),
            "readiness": self.readiness.to_dict(),
            "docker": self.docker.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/devboxctl/config.yml",
    "workdir": "/opt/my_dev_box",
    "state_dir": None,  # derived from workdir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": "/run/devboxctl",
    "templates_dir": None,  # derived from workdir when absent
    "network": "devbox-net",
    "default_template": "default",
    "login_user": "dev",
    "lock_timeout": 30.0,
    "assume_yes": False,
    "ports": {
        "base": 30022,
        "max_tries": 80,
        "step": 100,
        "reserved": [],
    },
    "resources": {
        "memory": "1g",
        "cpus": "1.0",
        "pids": 256,
    },
    "image": {
        "repository": "acm-lite",
        "tag": "latest",
    },
    "proxy": {
        "image": "alpine/socat:1.8.0.0",
        "memory": "64m",
        "cpus": "0.2",
        "pids": 64,
    },
    "readiness": {
        "attempts": 60,
        "interval": 0.5,
        "probe_timeout": 0.3,
    },
    "docker": {
        "docker_bin": "docker",
        "socket": "/var/run/docker.sock",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"base", "max_tries", "step", "reserved"},
    "resources": {"memory", "cpus", "pids"},
    "image": {"repository", "tag"},
    "proxy": {"image", "memory", "cpus", "pids"},
    "readiness": {"attempts", "interval", "probe_timeout"},
    "docker": {"docker_bin", "socket"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if _is_truthy(resolved_env.get(ASSUME_YES_ENV_VAR)):
        merged["assume_yes"] = True

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    config = _build_app_config(merged)
    extra_reserved = parse_port_list(resolved_env.get(RESERVED_PORTS_ENV_VAR, ""))
    if extra_reserved:
        reserved = tuple(sorted(set(config.ports.reserved) | set(extra_reserved)))
        config = _replace_ports(config, reserved)
    return config


def parse_port_list(raw: str) -> list[int]:
    """Parse a comma/space separated list of ports (``DEVBOX_RESERVED_HOST_PORTS``)."""
    ports: list[int] = []
    for chunk in re.split(r"[,\s]+", raw.strip()):
        if not chunk:
            continue
        try:
            value = int(chunk)
        except ValueError as exc:
            raise ConfigError(f"Invalid reserved host port {chunk!r}.") from exc
        if not 1 <= value <= 65535:
            raise ConfigError(f"Reserved host port {value} is outside 1-65535.")
        ports.append(value)
    return ports


def _replace_ports(config: AppConfig, reserved: tuple[int, ...]) -> AppConfig:
    return replace(config, ports=replace(config.ports, reserved=reserved))


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    network = raw.get("network")
    if network is not None and not str(network).strip():
        raise ConfigError("network must be a non-empty string.")

    image_map = _as_dict(raw.get("image"), "image")
    repository = image_map.get("repository")
    if repository is not None and not _IMAGE_REPOSITORY_PATTERN.fullmatch(str(repository)):
        raise ConfigError(
            "image.repository may only contain lowercase letters, digits, '.', '_', '/' and '-'."
        )

    resources_map = _as_dict(raw.get("resources"), "resources")
    memory = resources_map.get("memory")
    if memory is not None and not _MEMORY_PATTERN.fullmatch(str(memory)):
        raise ConfigError(f"resources.memory must look like 512m or 1g. Got {memory!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    workdir = _to_path(raw.get("workdir"))
    state_dir_value = raw.get("state_dir")
    state_dir = _to_path(state_dir_value) if state_dir_value else workdir / ".devbox"
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else state_dir / "logs"
    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else workdir / "templates"
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    base = _expect_int(ports_mapping.get("base"), "ports.base", default=30022)
    if not 1 <= base <= 65535:
        raise ConfigError(f"ports.base must be between 1 and 65535. Got {base}.")
    max_tries = _expect_int(ports_mapping.get("max_tries"), "ports.max_tries", default=80)
    if max_tries < 1:
        raise ConfigError("ports.max_tries must be at least 1.")
    step = _expect_int(ports_mapping.get("step"), "ports.step", default=100)
    if step < 1:
        raise ConfigError("ports.step must be at least 1.")
    reserved_raw = ports_mapping.get("reserved")
    reserved: list[int] = []
    if isinstance(reserved_raw, str):
        reserved = parse_port_list(reserved_raw)
    elif reserved_raw is not None:
        for index, item in enumerate(_as_sequence(reserved_raw, "ports.reserved")):
            reserved.append(_expect_int(item, f"ports.reserved[{index}]", default=0))
    ports = PortsConfig(
        base=base,
        max_tries=max_tries,
        step=step,
        reserved=tuple(sorted(set(reserved))),
    )

    resources_mapping = _as_dict(raw.get("resources"), "resources")
    resources = ResourcesConfig(
        memory=str(resources_mapping.get("memory", "1g")),
        cpus=_expect_cpus(resources_mapping.get("cpus"), "resources.cpus", default="1.0"),
        pids=_expect_int(resources_mapping.get("pids"), "resources.pids", default=256),
    )

    image_mapping = _as_dict(raw.get("image"), "image")
    image = ImageConfig(
        repository=str(image_mapping.get("repository", "acm-lite")),
        tag=str(image_mapping.get("tag", "latest")),
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        image=str(proxy_mapping.get("image", "alpine/socat:1.8.0.0")),
        memory=str(proxy_mapping.get("memory", "64m")),
        cpus=_expect_cpus(proxy_mapping.get("cpus"), "proxy.cpus", default="0.2"),
        pids=_expect_int(proxy_mapping.get("pids"), "proxy.pids", default=64),
    )

    readiness_mapping = _as_dict(raw.get("readiness"), "readiness")
    readiness = ReadinessConfig(
        attempts=_expect_int(readiness_mapping.get("attempts"), "readiness.attempts", default=60),
        interval=_expect_positive_float(
            readiness_mapping.get("interval"), "readiness.interval", default=0.5
        ),
        probe_timeout=_expect_positive_float(
            readiness_mapping.get("probe_timeout"), "readiness.probe_timeout", default=0.3
        ),
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        socket=_to_path(docker_mapping.get("socket", "/var/run/docker.sock")),
    )

    assume_yes_raw = raw.get("assume_yes", False)
    assume_yes = (
        _is_truthy(assume_yes_raw) if isinstance(assume_yes_raw, str) else bool(assume_yes_raw)
    )

    return AppConfig(
        config_file=config_file,
        workdir=workdir,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        network=str(raw.get("network", "devbox-net")).strip(),
        default_template=str(raw.get("default_template", "default")),
        login_user=str(raw.get("login_user", "dev")),
        lock_timeout=lock_timeout,
        assume_yes=assume_yes,
        ports=ports,
        resources=resources,
        image=image,
        proxy=proxy,
        readiness=readiness,
        docker=docker,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or key in LEGACY_ENV_ALIASES:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, path in LEGACY_ENV_ALIASES.items():
        if key in env:
            _assign_nested(overrides, list(path), _coerce_value(env[key]))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _is_truthy(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_cpus(value: object | None, label: str, *, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    numeric = _expect_positive_float(value, label, default=float(default))
    return str(value) if isinstance(value, str) else f"{numeric:g}"


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DockerConfig",
    "ImageConfig",
    "PortsConfig",
    "ProxyConfig",
    "ReadinessConfig",
    "ResourcesConfig",
    "load_config",
    "parse_port_list",
]
