"""Host port allocation for instance SSH ports and forwards."""
from __future__ import annotations

import errno
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .providers.docker import DockerProvider
from .state import MetadataStore, validate_port

MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when no free host port can be found."""


def tcp_connect_probe(port: int, timeout: float) -> bool:
    """Return ``True`` when something accepts connections on ``127.0.0.1:port``."""
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=timeout):
            return True
    except OSError:
        return False


def tcp_bind_probe(port: int) -> bool:
    """Return ``True`` when binding ``0.0.0.0:port`` fails because it is taken."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))  # noqa: S104 - probing every interface
        except OSError as exc:
            return exc.errno == errno.EADDRINUSE
    return False


@dataclass(slots=True)
class PortAllocator:
    """Find host ports that are free on the host, in docker and in metadata."""

    store: MetadataStore
    docker: DockerProvider
    reserved: Iterable[int] = ()
    step: int = 100
    probe_timeout: float = 0.2
    connect_probe: Callable[[int, float], bool] = tcp_connect_probe
    bind_probe: Callable[[int], bool] = tcp_bind_probe
    _reserved: frozenset[int] = field(init=False, default=frozenset())

    def __post_init__(self) -> None:
        """Freeze the reserved port set."""
        self._reserved = frozenset(int(port) for port in self.reserved)
        if self.step < 1:
            raise PortAllocationError("Port step must be a positive integer.")

    def candidates(self, base: int, max_tries: int) -> list[int]:
        """Return the ordered candidate list for *base*/*max_tries*."""
        ports = (base + index * self.step for index in range(max(max_tries, 0)))
        return [port for port in ports if 1 <= port <= MAX_PORT]

    def pick(self, base: int, max_tries: int, *, exclude: str | None = None) -> int:
        """Return the first free candidate ``base + i * step``."""
        validate_port(base, "base port")
        claims = self.store.claimed_ports(exclude=exclude)
        published = self.docker.published_ports()
        for candidate in self.candidates(base, max_tries):
            if self._in_use(candidate, claims=claims, published=published) is None:
                return candidate
        raise PortAllocationError(
            f"No free host port among {max_tries} candidates starting at {base} "
            f"(step {self.step})."
        )

    def port_in_use(self, port: int, *, exclude: str | None = None) -> str | None:
        """Return why *port* is unavailable, or ``None`` when it is free."""
        validate_port(port)
        return self._in_use(
            port,
            claims=self.store.claimed_ports(exclude=exclude),
            published=self.docker.published_ports(),
        )

    def list_claims(self) -> list[dict[str, Any]]:
        """Return every port claimed by metadata, sorted by port."""
        entries: list[dict[str, Any]] = []
        for record in self.store.iter_instances():
            entries.append({"name": record.name, "port": record.host_port, "kind": "ssh"})
            for mapping in self.store.load_forwards(record.name):
                entries.append(
                    {
                        "name": record.name,
                        "port": mapping.host_port,
                        "kind": "forward",
                        "bind": mapping.bind,
                        "container_port": mapping.container_port,
                    }
                )
        for port in sorted(self._reserved):
            entries.append({"name": "(reserved)", "port": port, "kind": "reserved"})
        entries.sort(key=lambda entry: (entry["port"], entry["name"]))
        return entries

    # ------------------------------------------------------------------
    def _in_use(
        self,
        port: int,
        *,
        claims: dict[int, str],
        published: set[int],
    ) -> str | None:
        if port in self._reserved:
            return "reserved by operator policy"
        if port in claims:
            return f"claimed by {claims[port]}"
        if port in published:
            return "published by a running container"
        if self.connect_probe(port, self.probe_timeout):
            return "accepting connections on 127.0.0.1"
        if self.bind_probe(port):
            return "already bound on the host"
        return None


__all__ = ["PortAllocationError", "PortAllocator", "tcp_bind_probe", "tcp_connect_probe"]
