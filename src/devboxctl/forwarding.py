"""Reconcile per-instance port forwards into a single relay proxy container.

Each instance owns at most one proxy container, ``<name>-pf``. The proxy is
never patched in place: every change removes it and starts a fresh one from
the complete declared forward set.
"""
from __future__ import annotations

from dataclasses import dataclass

from .config import AppConfig
from .ports import PortAllocator
from .providers.docker import ContainerInfo, DockerError, DockerProvider
from .state import ForwardMapping, MetadataStore, ProxyIndex, utc_now
from .templates import TemplateEngine

RELAY_TEMPLATE = "proxy/relay.sh.j2"
PROXY_SUFFIX = "-pf"


class ForwardError(RuntimeError):
    """Raised when the forwarding proxy cannot be brought in line with metadata."""


@dataclass(frozen=True, slots=True)
class ForwardStatus:
    """A declared mapping together with the observed proxy state."""

    mapping: ForwardMapping
    status: str

    def to_dict(self) -> dict[str, object]:
        """Return a JSON friendly representation."""
        return {**self.mapping.to_dict(), "status": self.status}


@dataclass(slots=True)
class ForwardReconciler:
    """Keep the relay proxy of each instance in sync with its forward set."""

    config: AppConfig
    store: MetadataStore
    docker: DockerProvider
    ports: PortAllocator
    templates: TemplateEngine

    def proxy_name(self, name: str) -> str:
        """Return the canonical proxy container name for *name*."""
        return f"{name}{PROXY_SUFFIX}"

    def render_script(self, name: str, entries: list[ForwardMapping]) -> str:
        """Render the relay shell script for *entries*."""
        return self.templates.render_to_string(
            RELAY_TEMPLATE,
            {"upstream": name, "forwards": [entry.to_dict() for entry in entries]},
        )

    def sync(self, name: str) -> ProxyIndex | None:
        """Rebuild the proxy for *name* from its declared forward set."""
        self._remove_proxies(name)
        entries = self.store.load_forwards(name)
        if not entries:
            return None

        proxy = self.config.proxy
        container = self.proxy_name(name)
        if self.docker.inspect(container) is not None:
            raise ForwardError(
                f"Container {container} exists but is not the forwarding proxy of '{name}'; "
                "refusing to replace it."
            )
        script = self.render_script(name, entries)
        try:
            self.docker.run_container(
                container,
                proxy.image,
                network=self.config.network,
                publish=[entry.publish for entry in entries],
                labels={
                    "devbox.managed": "true",
                    "devbox.forward": "true",
                    "devbox.parent": name,
                },
                memory=proxy.memory,
                cpus=proxy.cpus,
                pids=proxy.pids,
                read_only=True,
                entrypoint="/bin/sh",
                command=["-c", script],
            )
        except DockerError as exc:
            message = f"Failed to start forwarding proxy {container}: {exc}"
            try:
                if self._owned_proxy(name, container) is not None:
                    self.docker.remove(container)
            except DockerError as cleanup_exc:
                message = f"{message}; cleanup also failed: {cleanup_exc}"
            raise ForwardError(message) from exc

        index = ProxyIndex(
            container=container,
            image=proxy.image,
            listeners=tuple(entry.host_port for entry in entries),
            updated_at=utc_now(),
        )
        self.store.save_proxy(name, index)
        return index

    def add(self, name: str, mapping: ForwardMapping) -> bool:
        """Declare *mapping* for *name*; return ``False`` when it already exists."""
        entries = self.store.load_forwards(name)
        if mapping in entries:
            return False
        for entry in entries:
            if entry.host_port == mapping.host_port:
                raise ValueError(
                    f"Host port {mapping.host_port} is already forwarded for '{name}' "
                    f"({entry.to_line()})."
                )
        reason = self.ports.port_in_use(mapping.host_port)
        if reason is not None:
            raise ValueError(f"Host port {mapping.host_port} is unavailable: {reason}.")

        info = self.docker.inspect(name)
        if info is None or not info.running:
            raise ValueError(f"Instance '{name}' must be running to add a forward.")
        try:
            self.docker.connect_network(self.config.network, name)
        except DockerError as exc:
            raise ForwardError(
                f"Could not attach '{name}' to network {self.config.network}: {exc}"
            ) from exc

        previous = list(entries)
        self.store.save_forwards(name, [*previous, mapping])
        try:
            self.sync(name)
        except ForwardError as exc:
            self.store.save_forwards(name, previous)
            message = f"Forward {mapping.to_line()} for '{name}' was rolled back: {exc}"
            try:
                self.sync(name)
            except ForwardError as resync_exc:
                message = f"{message}; restoring previous proxy also failed: {resync_exc}"
            raise ForwardError(message) from exc
        return True

    def remove(self, name: str, mapping: ForwardMapping) -> ProxyIndex | None:
        """Drop *mapping* from the set of *name* and rebuild the proxy."""
        entries = self.store.load_forwards(name)
        if mapping not in entries:
            raise ValueError(f"No forward {mapping.to_line()} declared for '{name}'.")
        self.store.save_forwards(name, [entry for entry in entries if entry != mapping])
        return self.sync(name)

    def list_forwards(self, name: str) -> list[ForwardStatus]:
        """Return declared mappings with the state observed on the proxy."""
        entries = self.store.load_forwards(name)
        if not entries:
            return []
        index = self.store.load_proxy(name)
        container = index.container if index is not None else self.proxy_name(name)
        info = self._owned_proxy(name, container)
        listeners = set(index.listeners) if index is not None else set()
        statuses: list[ForwardStatus] = []
        for entry in entries:
            if info is None:
                status = "absent"
            elif not info.running:
                status = info.status
            elif entry.host_port in listeners:
                status = "active"
            else:
                status = "pending"
            statuses.append(ForwardStatus(mapping=entry, status=status))
        return statuses

    def proxy_state(self, name: str) -> str:
        """Return the proxy container state for *name* (``absent`` when missing)."""
        index = self.store.load_proxy(name)
        container = index.container if index is not None else self.proxy_name(name)
        info = self._owned_proxy(name, container)
        return info.status if info is not None else "absent"

    def teardown(self, name: str) -> list[str]:
        """Remove the proxy, its index and the forward set of *name*."""
        had_index = self.store.load_proxy(name) is not None
        removed = self._remove_proxies(name)
        if had_index:
            removed.append("proxy-index")
        if self.store.load_forwards(name):
            removed.append("forward-set")
        self.store.save_forwards(name, [])
        return removed

    # ------------------------------------------------------------------
    def _owned_proxy(self, name: str, container: str) -> ContainerInfo | None:
        """Return *container* only when it is the relay proxy of *name*."""
        info = self.docker.inspect(container)
        if info is None:
            return None
        if info.labels.get("devbox.forward") != "true" or info.labels.get("devbox.parent") != name:
            return None
        return info

    def _remove_proxies(self, name: str) -> list[str]:
        candidates = {self.proxy_name(name)}
        index = self.store.load_proxy(name)
        if index is not None:
            candidates.add(index.container)
        removed: list[str] = []
        for container in sorted(candidates):
            try:
                # Containers that merely share the name (e.g. an instance called demo-pf) stay.
                if self._owned_proxy(name, container) is None:
                    continue
                if self.docker.remove(container):
                    removed.append(container)
            except DockerError as exc:
                raise ForwardError(f"Failed to remove forwarding proxy {container}: {exc}") from exc
        self.store.delete_proxy(name)
        return removed


__all__ = ["ForwardError", "ForwardReconciler", "ForwardStatus"]
