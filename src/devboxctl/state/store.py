"""Flat-file metadata store for devboxctl instances.

The store directory (``<workdir>/.devbox`` by default) holds a handful of
small text files per instance::

    <name>.instance   key=value instance record
    <name>.forward    bind:host_port:container_port, one mapping per line
    <name>.security   key=value hardening marker
    <name>.pass       key=value login credential (mode 0600)
    <name>.proxy      key=value forwarding proxy index

Every write goes to a temporary file in the same directory which is then
``os.replace``d onto the target so readers never observe a partial record.
"""
from __future__ import annotations

import ipaddress
import os
import re
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path

from ..locking import LockManager

INSTANCE_SUFFIX = "instance"
FORWARD_SUFFIX = "forward"
SECURITY_SUFFIX = "security"
CREDENTIAL_SUFFIX = "pass"
PROXY_SUFFIX = "proxy"
RECORD_SUFFIXES = (
    INSTANCE_SUFFIX,
    FORWARD_SUFFIX,
    SECURITY_SUFFIX,
    CREDENTIAL_SUFFIX,
    PROXY_SUFFIX,
)

SECURITY_DISABLED = "disabled"
SECURITY_ENABLED = "enabled"
SECURITY_STATES = (SECURITY_DISABLED, SECURITY_ENABLED)

DEFAULT_BIND = "127.0.0.1"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class MetadataStoreError(RuntimeError):
    """Raised when a record on disk is malformed or cannot be written."""


def utc_now() -> str:
    """Return the current time as an ISO-8601 UTC timestamp."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def validate_instance_name(name: str) -> str:
    """Validate and normalise an instance name."""
    normalised = name.strip()
    if not normalised:
        raise ValueError("Instance name must be a non-empty string.")
    if not _NAME_PATTERN.fullmatch(normalised):
        raise ValueError(
            f"Invalid instance name {normalised!r}: must match [A-Za-z0-9][A-Za-z0-9_.-]*."
        )
    return normalised


def validate_port(value: object, label: str = "port") -> int:
    """Return *value* as a TCP port number or raise :class:`ValueError`."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid {label}: {value!r}.")
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {label}: {value!r}.") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"Invalid {label}: {port} is outside 1-65535.")
    return port


def validate_bind_address(value: str) -> str:
    """Return *value* when it is a literal IPv4/IPv6 address."""
    candidate = value.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        raise ValueError(f"Invalid bind address {value!r}.") from None
    return candidate


# ----------------------------------------------------------------------
# Record types
# ----------------------------------------------------------------------
@dataclass(slots=True)
class InstanceRecord:
    """Durable description of a managed instance."""

    name: str
    template: str
    image: str
    host_port: int
    memory: str
    cpus: str
    pids: int
    security: str = SECURITY_DISABLED
    created_at: str = field(default_factory=utc_now)
    network: str | None = None
    container_id: str | None = None
    updated_at: str | None = None
    last_started_at: str | None = None

    REQUIRED = (
        "name",
        "template",
        "image",
        "host_port",
        "memory",
        "cpus",
        "pids",
        "security",
        "created_at",
    )

    def to_mapping(self) -> dict[str, str]:
        """Return the ``key=value`` representation, omitting unset optionals."""
        payload: dict[str, str] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                continue
            payload[item.name] = str(value)
        return payload

    def to_dict(self) -> dict[str, object]:
        """Return a JSON friendly representation."""
        return {item.name: getattr(self, item.name) for item in fields(self)}

    @classmethod
    def from_mapping(cls, data: Mapping[str, str], *, source: str = "record") -> InstanceRecord:
        """Parse a mapping produced by :meth:`MetadataStore.load`."""
        allowed = {item.name for item in fields(cls)}
        unknown = set(data) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise MetadataStoreError(f"{source}: unknown keys {joined}.")
        missing = [key for key in cls.REQUIRED if not data.get(key)]
        if missing:
            raise MetadataStoreError(f"{source}: missing required keys {', '.join(missing)}.")
        try:
            name = validate_instance_name(data["name"])
            host_port = validate_port(data["host_port"], "host_port")
        except ValueError as exc:
            raise MetadataStoreError(f"{source}: {exc}") from exc
        try:
            pids = int(data["pids"])
        except ValueError:
            raise MetadataStoreError(f"{source}: pids must be an integer.") from None
        security = data["security"]
        if security not in SECURITY_STATES:
            raise MetadataStoreError(
                f"{source}: security must be one of {', '.join(SECURITY_STATES)}."
            )
        return cls(
            name=name,
            template=data["template"],
            image=data["image"],
            host_port=host_port,
            memory=data["memory"],
            cpus=data["cpus"],
            pids=pids,
            security=security,
            created_at=data["created_at"],
            network=data.get("network") or None,
            container_id=data.get("container_id") or None,
            updated_at=data.get("updated_at") or None,
            last_started_at=data.get("last_started_at") or None,
        )


@dataclass(frozen=True, slots=True)
class ForwardMapping:
    """One ``bind:host_port:container_port`` entry."""

    bind: str
    host_port: int
    container_port: int

    @classmethod
    def create(
        cls,
        host_port: object,
        container_port: object,
        bind: str = DEFAULT_BIND,
    ) -> ForwardMapping:
        """Validate raw values and build a mapping."""
        return cls(
            bind=validate_bind_address(bind),
            host_port=validate_port(host_port, "host port"),
            container_port=validate_port(container_port, "container port"),
        )

    @classmethod
    def parse(cls, line: str) -> ForwardMapping:
        """Parse a stored line; IPv6 binds are split from the right."""
        parts = line.strip().rsplit(":", 2)
        if len(parts) != 3 or not parts[0]:
            raise ValueError(f"Malformed forward entry {line!r}.")
        return cls.create(parts[1], parts[2], parts[0])

    def to_line(self) -> str:
        """Return the stored representation."""
        return f"{self.bind}:{self.host_port}:{self.container_port}"

    @property
    def publish(self) -> str:
        """Return the ``docker run -p`` argument publishing this mapping."""
        bind = f"[{self.bind}]" if ":" in self.bind else self.bind
        return f"{bind}:{self.host_port}:{self.host_port}"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON friendly representation."""
        return {
            "bind": self.bind,
            "host_port": self.host_port,
            "container_port": self.container_port,
        }


@dataclass(frozen=True, slots=True)
class SecurityMarker:
    """Hardening marker written after a successful enable."""

    state: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    """Login credential for the instance user."""

    user: str
    password: str
    generated_at: str


@dataclass(frozen=True, slots=True)
class ProxyIndex:
    """Instance to forwarding-proxy index."""

    container: str
    image: str
    listeners: tuple[int, ...]
    updated_at: str

    def to_mapping(self) -> dict[str, str]:
        """Return the ``key=value`` representation."""
        return {
            "container": self.container,
            "image": self.image,
            "listeners": ",".join(str(port) for port in self.listeners),
            "updated_at": self.updated_at,
        }


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
@dataclass
class MetadataStore:
    """Read and write per-instance records under ``root``."""

    root: Path
    locks: LockManager | None = None

    def __post_init__(self) -> None:
        """Normalise the root path and default the record lock manager."""
        self.root = Path(self.root).expanduser()
        if self.locks is None:
            self.locks = LockManager(self.root / ".locks")

    def ensure_root(self) -> None:
        """Create the store directory if needed."""
        self.root.mkdir(parents=True, exist_ok=True)
        os.chmod(self.root, 0o700)

    def path_for(self, name: str, suffix: str) -> Path:
        """Return the file backing record *suffix* of instance *name*."""
        return self.root / f"{name}.{suffix}"

    # Generic key=value records ---------------------------------------
    def load(self, key: str) -> dict[str, str]:
        """Parse ``<root>/<key>`` strictly; a missing file yields ``{}``."""
        path = self.root / key
        if not path.exists():
            return {}
        data: dict[str, str] = {}
        for lineno, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                raise MetadataStoreError(f"{path}:{lineno}: expected key=value.")
            name, value = line.split("=", 1)
            name = name.strip()
            if not name:
                raise MetadataStoreError(f"{path}:{lineno}: empty key.")
            if name in data:
                raise MetadataStoreError(f"{path}:{lineno}: duplicate key {name!r}.")
            data[name] = value.strip()
        return data

    def save(self, key: str, mapping: Mapping[str, object], *, mode: int = 0o640) -> None:
        """Atomically write *mapping* as ``key=value`` lines."""
        lines = []
        for name, value in mapping.items():
            text = str(value)
            if "\n" in text or "=" in name:
                raise MetadataStoreError(f"Refusing to store unsafe value for {name!r}.")
            lines.append(f"{name}={text}")
        self._write_text(key, "\n".join(lines) + "\n", mode=mode)

    def delete(self, key: str) -> bool:
        """Remove ``<root>/<key>``; return whether anything was deleted."""
        path = self.root / key
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def update(self, name: str, changes: Mapping[str, object]) -> InstanceRecord:
        """Merge *changes* into the instance record under the record lock."""
        with self.record_lock(name):
            key = f"{name}.{INSTANCE_SUFFIX}"
            data = self.load(key)
            if not data:
                raise MetadataStoreError(f"No instance record for '{name}'.")
            for item, value in changes.items():
                if value is None:
                    data.pop(item, None)
                else:
                    data[item] = str(value)
            if "updated_at" not in changes:
                data["updated_at"] = utc_now()
            record = InstanceRecord.from_mapping(data, source=str(self.root / key))
            self.save(key, record.to_mapping())
            return record

    @contextmanager
    def record_lock(self, name: str) -> Iterator[None]:
        """Hold the per-instance record lock."""
        if self.locks is None:
            raise MetadataStoreError("Metadata store has no lock manager configured.")
        with self.locks.record_lock(name):
            yield

    # Instance records ------------------------------------------------
    def load_instance(self, name: str) -> InstanceRecord | None:
        """Return the instance record or ``None`` when absent."""
        key = f"{name}.{INSTANCE_SUFFIX}"
        data = self.load(key)
        if not data:
            return None
        record = InstanceRecord.from_mapping(data, source=str(self.root / key))
        if record.name != name:
            raise MetadataStoreError(
                f"{self.root / key}: record name {record.name!r} does not match file name."
            )
        return record

    def save_instance(self, record: InstanceRecord) -> None:
        """Persist *record*."""
        self.save(f"{record.name}.{INSTANCE_SUFFIX}", record.to_mapping())

    def delete_instance(self, name: str) -> bool:
        """Delete the instance record."""
        return self.delete(f"{name}.{INSTANCE_SUFFIX}")

    def instance_names(self) -> list[str]:
        """Return every instance with a record, sorted."""
        if not self.root.is_dir():
            return []
        suffix = f".{INSTANCE_SUFFIX}"
        names = [path.name[: -len(suffix)] for path in self.root.glob(f"*{suffix}")]
        return sorted(names)

    def iter_instances(self) -> Iterator[InstanceRecord]:
        """Yield every stored instance record."""
        for name in self.instance_names():
            record = self.load_instance(name)
            if record is not None:
                yield record

    # Forward sets ----------------------------------------------------
    def load_forwards(self, name: str) -> list[ForwardMapping]:
        """Return the ordered forward set for *name*."""
        path = self.path_for(name, FORWARD_SUFFIX)
        if not path.exists():
            return []
        entries: list[ForwardMapping] = []
        for lineno, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                entries.append(ForwardMapping.parse(line))
            except ValueError as exc:
                raise MetadataStoreError(f"{path}:{lineno}: {exc}") from exc
        return entries

    def save_forwards(self, name: str, entries: Iterable[ForwardMapping]) -> None:
        """Persist the forward set, deleting the file when it is empty."""
        items = list(entries)
        key = f"{name}.{FORWARD_SUFFIX}"
        if not items:
            self.delete(key)
            return
        self._write_text(key, "".join(entry.to_line() + "\n" for entry in items), mode=0o640)

    # Security markers ------------------------------------------------
    def load_security(self, name: str) -> SecurityMarker | None:
        """Return the hardening marker if present."""
        key = f"{name}.{SECURITY_SUFFIX}"
        data = self.load(key)
        if not data:
            return None
        if data.get("state") != SECURITY_ENABLED or set(data) - {"state", "applied_at"}:
            raise MetadataStoreError(f"{self.root / key}: malformed security marker.")
        return SecurityMarker(state=data["state"], applied_at=data.get("applied_at", ""))

    def mark_security(self, name: str) -> SecurityMarker:
        """Write the hardening marker."""
        marker = SecurityMarker(state=SECURITY_ENABLED, applied_at=utc_now())
        self.save(
            f"{name}.{SECURITY_SUFFIX}",
            {"state": marker.state, "applied_at": marker.applied_at},
        )
        return marker

    def clear_security(self, name: str) -> bool:
        """Remove the hardening marker."""
        return self.delete(f"{name}.{SECURITY_SUFFIX}")

    # Credentials -----------------------------------------------------
    def load_credential(self, name: str) -> CredentialRecord | None:
        """Return the stored credential if present."""
        key = f"{name}.{CREDENTIAL_SUFFIX}"
        data = self.load(key)
        if not data:
            return None
        try:
            return CredentialRecord(
                user=data["user"],
                password=data["password"],
                generated_at=data["generated_at"],
            )
        except KeyError as exc:
            raise MetadataStoreError(f"{self.root / key}: missing key {exc.args[0]}.") from None

    def save_credential(self, name: str, credential: CredentialRecord) -> None:
        """Persist *credential* with owner-only permissions."""
        self.save(
            f"{name}.{CREDENTIAL_SUFFIX}",
            {
                "user": credential.user,
                "password": credential.password,
                "generated_at": credential.generated_at,
            },
            mode=0o600,
        )

    # Proxy index -----------------------------------------------------
    def load_proxy(self, name: str) -> ProxyIndex | None:
        """Return the proxy index for *name* if present."""
        key = f"{name}.{PROXY_SUFFIX}"
        data = self.load(key)
        if not data:
            return None
        try:
            listeners = tuple(
                int(item) for item in data.get("listeners", "").split(",") if item.strip()
            )
            return ProxyIndex(
                container=data["container"],
                image=data["image"],
                listeners=listeners,
                updated_at=data.get("updated_at", ""),
            )
        except (KeyError, ValueError) as exc:
            raise MetadataStoreError(f"{self.root / key}: malformed proxy index ({exc}).") from exc

    def save_proxy(self, name: str, index: ProxyIndex) -> None:
        """Persist the proxy index."""
        self.save(f"{name}.{PROXY_SUFFIX}", index.to_mapping())

    def delete_proxy(self, name: str) -> bool:
        """Remove the proxy index."""
        return self.delete(f"{name}.{PROXY_SUFFIX}")

    # Whole-instance helpers -----------------------------------------
    def purge(self, name: str) -> list[str]:
        """Delete every record belonging to *name*; return removed suffixes."""
        removed = []
        for suffix in RECORD_SUFFIXES:
            if self.delete(f"{name}.{suffix}"):
                removed.append(suffix)
        return removed

    def has_records(self, name: str) -> bool:
        """Return whether any record file exists for *name*."""
        return any(self.path_for(name, suffix).exists() for suffix in RECORD_SUFFIXES)

    def claimed_ports(self, exclude: str | None = None) -> dict[int, str]:
        """Map every recorded host port to a description of its owner."""
        claims: dict[int, str] = {}
        for name in self.instance_names():
            if name == exclude:
                continue
            record = self.load_instance(name)
            if record is not None:
                claims[record.host_port] = f"{name}:ssh"
            for entry in self.load_forwards(name):
                claims.setdefault(entry.host_port, f"{name}:forward")
        return claims

    # Internal --------------------------------------------------------
    def _write_text(self, key: str, content: str, *, mode: int) -> None:
        self.ensure_root()
        path = self.root / key
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(tmp_fd, mode)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise MetadataStoreError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "CredentialRecord",
    "DEFAULT_BIND",
    "ForwardMapping",
    "InstanceRecord",
    "MetadataStore",
    "MetadataStoreError",
    "ProxyIndex",
    "SECURITY_DISABLED",
    "SECURITY_ENABLED",
    "SecurityMarker",
    "utc_now",
    "validate_bind_address",
    "validate_instance_name",
    "validate_port",
]
