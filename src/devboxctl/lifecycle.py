"""Instance lifecycle controller.

The controller converges one named instance at a time from its metadata
record onto the container runtime::

    absent --start--> running --stop--> stopped --start--> running
       ^                                                      |
       +---------------------------remove---------------------+

Every mutating operation checks the docker daemon first. Failures in
sub-resources (readiness, first-boot hook, hardening) are reported as
warnings and leave the instance running; failures before the container
exists leave neither a container nor a record behind.
"""
from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .assets import TemplateAssetError, TemplateAssets, validate_template_name
from .config import AppConfig
from .credentials import rotate_credential
from .forwarding import ForwardReconciler
from .logging import OperationScope
from .ports import PortAllocator, tcp_connect_probe
from .providers.docker import ContainerInfo, DockerError, DockerProvider
from .providers.hooks import HookExecutor, HookMode, HookResult
from .state import (
    SECURITY_DISABLED,
    SECURITY_ENABLED,
    CredentialRecord,
    InstanceRecord,
    MetadataStore,
    utc_now,
    validate_instance_name,
    validate_port,
)

SSHD_COMMAND = ("/usr/sbin/sshd", "-D")
_MEMORY_PATTERN = re.compile(r"^[0-9]+[bkmgBKMG]?$")


class LifecycleError(RuntimeError):
    """Base class for lifecycle failures."""


class InstanceNotFoundError(LifecycleError):
    """Raised when neither a container nor a record exists for an instance."""


class InstanceStateError(LifecycleError):
    """Raised when an instance is not in the state an operation requires."""


@dataclass(slots=True)
class InstanceStatus:
    """Observed state of one instance."""

    name: str
    state: str
    recorded: bool
    image: str = ""
    template: str = ""
    host_port: int | None = None
    ip_address: str = ""
    security: str = SECURITY_DISABLED
    proxy: str = "absent"
    forwards: list[dict[str, object]] = field(default_factory=list)
    memory: str = ""
    cpus: str = ""
    pids: int | None = None
    created_at: str = ""
    last_started_at: str = ""

    @property
    def running(self) -> bool:
        """Return ``True`` when the instance container is running."""
        return self.state == "running"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON friendly representation."""
        return {
            "name": self.name,
            "state": self.state,
            "recorded": self.recorded,
            "image": self.image,
            "template": self.template,
            "host_port": self.host_port,
            "ip_address": self.ip_address,
            "security": self.security,
            "proxy": self.proxy,
            "forwards": list(self.forwards),
            "memory": self.memory,
            "cpus": self.cpus,
            "pids": self.pids,
            "created_at": self.created_at,
            "last_started_at": self.last_started_at,
        }


@dataclass(slots=True)
class StartResult:
    """Outcome of :meth:`InstanceController.start`."""

    name: str
    action: str
    record: InstanceRecord | None
    credential: CredentialRecord | None
    status: InstanceStatus
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SecurityResult:
    """Outcome of a hardening enable/disable."""

    name: str
    action: str
    ok: bool
    detail: str
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RemoveResult:
    """Artifacts deleted by :meth:`InstanceController.remove`."""

    name: str
    container_removed: bool
    removed: list[str] = field(default_factory=list)


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def validate_memory(value: str) -> str:
    """Validate a docker memory limit such as ``512m`` or ``2g``."""
    normalised = str(value).strip()
    if not _MEMORY_PATTERN.fullmatch(normalised):
        raise ValueError(f"Invalid memory limit {value!r}: expected e.g. 512m or 1g.")
    return normalised


def validate_cpus(value: str) -> str:
    """Validate a docker CPU quota such as ``1.5``."""
    normalised = str(value).strip()
    try:
        numeric = float(normalised)
    except ValueError:
        raise ValueError(f"Invalid cpus value {value!r}.") from None
    if numeric <= 0:
        raise ValueError(f"Invalid cpus value {value!r}: must be greater than zero.")
    return normalised


def validate_pids(value: object) -> int:
    """Validate a pids limit."""
    try:
        pids = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid pids limit {value!r}.") from None
    if pids < 1:
        raise ValueError(f"Invalid pids limit {pids}: must be at least 1.")
    return pids


@dataclass(slots=True)
class InstanceController:
    """Create, start, stop and remove instances and their side state."""

    config: AppConfig
    store: MetadataStore
    docker: DockerProvider
    ports: PortAllocator
    hooks: HookExecutor
    assets: TemplateAssets
    forwards: ForwardReconciler
    sleep: Callable[[float], None] = time.sleep
    connect_probe: Callable[[int, float], bool] = tcp_connect_probe

    # Runtime ---------------------------------------------------------
    def ensure_runtime(self, op: OperationScope | None = None) -> None:
        """Fail fast with :class:`DockerUnavailableError` when docker is down."""
        self.docker.ensure_available()
        _step(op, "docker.available")

    # Images ----------------------------------------------------------
    def build_image(
        self,
        template: str | None = None,
        *,
        no_cache: bool = False,
        op: OperationScope | None = None,
    ) -> tuple[str, list[str]]:
        """Build the image for *template*; return its reference and Dockerfile warnings."""
        self.ensure_runtime(op)
        template_name = validate_template_name(template or self.config.default_template)
        image = self.config.image_for(template_name)
        warnings = self._build(template_name, image, no_cache=no_cache, op=op)
        return image, warnings

    # Start -----------------------------------------------------------
    def start(
        self,
        name: str,
        *,
        template: str | None = None,
        image: str | None = None,
        port_base: int | None = None,
        memory: str | None = None,
        cpus: str | None = None,
        pids: int | None = None,
        enable_security: bool = False,
        op: OperationScope | None = None,
    ) -> StartResult:
        """Bring *name* to the running state, creating it when absent."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        info = self.docker.inspect(name)
        record = self.store.load_instance(name)

        if info is not None and info.running:
            _step(op, "container.start", status="skipped", detail="already running")
            warnings = [f"Instance '{name}' is already running; credentials were not rotated."]
            if enable_security:
                security = self._enable_security(name, self._record_or_default(name), op=op)
                warnings.extend(security.warnings)
            return StartResult(
                name=name,
                action="already-running",
                record=record,
                credential=None,
                status=self.status(name),
                warnings=warnings,
            )
        if info is not None:
            return self._restart(name, info, record, enable_security=enable_security, op=op)
        return self._create(
            name,
            record,
            template=template,
            image=image,
            port_base=port_base,
            memory=memory,
            cpus=cpus,
            pids=pids,
            enable_security=enable_security,
            op=op,
        )

    def _create(
        self,
        name: str,
        record: InstanceRecord | None,
        *,
        template: str | None,
        image: str | None,
        port_base: int | None,
        memory: str | None,
        cpus: str | None,
        pids: int | None,
        enable_security: bool,
        op: OperationScope | None,
    ) -> StartResult:
        warnings: list[str] = []
        template_name = validate_template_name(
            template or (record.template if record else self.config.default_template)
        )
        image_ref = image or (record.image if record else self.config.image_for(template_name))
        if port_base is not None:
            base = validate_port(port_base, "port base")
        elif record is not None:
            base = record.host_port
        else:
            base = self.config.ports.base
        resources = self.config.resources
        memory_value = validate_memory(memory or (record.memory if record else resources.memory))
        cpus_value = validate_cpus(cpus or (record.cpus if record else resources.cpus))
        pids_value = validate_pids(pids or (record.pids if record else resources.pids))
        reapply_security = enable_security or self.store.load_security(name) is not None
        if enable_security:
            self.assets.harden_hook(template_name)

        if self.docker.image_exists(image_ref):
            _step(op, "image.build", status="skipped", detail=f"{image_ref} present")
        else:
            warnings.extend(self._build(template_name, image_ref, no_cache=False, op=op))

        if self.docker.ensure_network(self.config.network):
            _step(op, "network.create", detail=self.config.network)

        port = self.ports.pick(base, self.config.ports.max_tries, exclude=name)
        _step(op, "ports.pick", detail=str(port))

        created_at = record.created_at if record else utc_now()
        labels = {
            "devbox.managed": "true",
            "devbox.name": name,
            "devbox.image": image_ref,
            "devbox.template": template_name,
            "devbox.created": created_at,
            "devbox.port": str(port),
        }
        try:
            container_id = self.docker.run_container(
                name,
                image_ref,
                network=self.config.network,
                publish=[f"{port}:22"],
                labels=labels,
                memory=memory_value,
                cpus=cpus_value,
                pids=pids_value,
                command=SSHD_COMMAND,
            )
        except DockerError as exc:
            _step(op, "container.run", status="error", detail=str(exc))
            try:
                if self.docker.remove(name):
                    _step(op, "container.cleanup", detail=name)
            except DockerError as cleanup_exc:
                _step(op, "container.cleanup", status="error", detail=str(cleanup_exc))
            raise
        _step(op, "container.run", detail=container_id[:12] or name)

        warnings.extend(self._after_boot(name, port, op=op))

        firstboot = self.assets.firstboot_hook(template_name)
        if firstboot is not None:
            result = self.hooks.run(name, firstboot, HookMode.RUN)
            warnings.extend(self._hook_step(op, "hook.firstboot", result))

        credential = self._rotate(name, op=op, warnings=warnings)

        now = utc_now()
        new_record = InstanceRecord(
            name=name,
            template=template_name,
            image=image_ref,
            host_port=port,
            memory=memory_value,
            cpus=cpus_value,
            pids=pids_value,
            security=SECURITY_DISABLED,
            created_at=created_at,
            network=self.config.network,
            container_id=container_id or None,
            updated_at=now,
            last_started_at=now,
        )
        self.store.clear_security(name)
        self.store.save_instance(new_record)
        _step(op, "metadata.save", detail=f"{name}.instance")

        if reapply_security:
            try:
                security = self._enable_security(name, new_record, op=op)
            except TemplateAssetError as exc:
                warnings.append(str(exc))
                _step(op, "hook.harden.enable", status="warning", detail=str(exc))
            else:
                warnings.extend(security.warnings)

        return StartResult(
            name=name,
            action="created",
            record=self.store.load_instance(name),
            credential=credential,
            status=self.status(name),
            warnings=warnings,
        )

    def _restart(
        self,
        name: str,
        info: ContainerInfo,
        record: InstanceRecord | None,
        *,
        enable_security: bool,
        op: OperationScope | None,
    ) -> StartResult:
        warnings: list[str] = []
        if record is None:
            record = self._adopt(name, info, op=op)

        self.docker.start(name)
        _step(op, "container.start", detail=name)
        try:
            attached = self.docker.connect_network(self.config.network, name)
            _step(
                op,
                "network.connect",
                status="success" if attached else "skipped",
                detail=self.config.network,
            )
        except DockerError as exc:
            warnings.append(f"Could not attach to network {self.config.network}: {exc}")
            _step(op, "network.connect", status="warning", detail=str(exc))

        warnings.extend(self._after_boot(name, record.host_port, op=op))
        credential = self._rotate(name, op=op, warnings=warnings)

        now = utc_now()
        self.store.update(
            name,
            {
                "last_started_at": now,
                "container_id": info.id or None,
                "network": self.config.network,
            },
        )
        _step(op, "metadata.update", detail="last_started_at")

        try:
            if self.store.load_security(name) is not None:
                warnings.extend(self._resume_security(name, record.template, op=op))
            elif enable_security:
                warnings.extend(self._enable_security(name, record, op=op).warnings)
        except TemplateAssetError as exc:
            warnings.append(str(exc))
            _step(op, "hook.harden", status="warning", detail=str(exc))

        return StartResult(
            name=name,
            action="restarted",
            record=self.store.load_instance(name),
            credential=credential,
            status=self.status(name),
            warnings=warnings,
        )

    def _adopt(
        self,
        name: str,
        info: ContainerInfo,
        *,
        op: OperationScope | None,
        persist: bool = True,
    ) -> InstanceRecord:
        """Build (and optionally save) a record for a managed container that has none."""
        if info.labels.get("devbox.managed") != "true":
            raise InstanceStateError(
                f"Container '{name}' exists but is not managed by devboxctl."
            )
        if info.ssh_port is None:
            raise InstanceStateError(f"Container '{name}' does not publish an SSH port.")
        resources = self.config.resources
        record = InstanceRecord(
            name=name,
            template=info.labels.get("devbox.template", self.config.default_template),
            image=info.image or self.config.image_for(self.config.default_template),
            host_port=info.ssh_port,
            memory=resources.memory,
            cpus=resources.cpus,
            pids=resources.pids,
            security=(
                SECURITY_ENABLED if self.store.load_security(name) is not None else SECURITY_DISABLED
            ),
            created_at=info.labels.get("devbox.created") or utc_now(),
            network=self.config.network,
            container_id=info.id or None,
        )
        if persist:
            self.store.save_instance(record)
            _step(op, "metadata.adopt", detail=f"{name}.instance")
        return record

    # Readiness and credentials --------------------------------------
    def wait_ready(self, name: str, port: int) -> bool:
        """Poll until sshd answers on *port* and runs inside *name*."""
        readiness = self.config.readiness
        for _ in range(readiness.attempts):
            if self.connect_probe(port, readiness.probe_timeout):
                probe = self.docker.exec_command(name, ["pgrep", "-x", "sshd"], check=False)
                if probe.returncode == 0:
                    return True
            self.sleep(readiness.interval)
        return False

    def _after_boot(self, name: str, port: int, *, op: OperationScope | None) -> list[str]:
        warnings: list[str] = []
        if self.wait_ready(name, port):
            _step(op, "sshd.ready", detail=str(port))
        else:
            message = f"sshd in '{name}' did not become ready on port {port}."
            warnings.append(message)
            _step(op, "sshd.ready", status="warning", detail=message)

        user = self.config.login_user
        home_fix = self.docker.exec_command(
            name,
            ["sh", "-c", f'chown -R "$(id -u {user}):$(id -g {user})" /home/{user}'],
            check=False,
        )
        if home_fix.returncode == 0:
            _step(op, "home.permissions", detail=f"/home/{user}")
        else:
            _step(op, "home.permissions", status="warning", detail=(home_fix.stderr or "").strip())
        return warnings

    def _rotate(
        self,
        name: str,
        *,
        op: OperationScope | None,
        warnings: list[str],
    ) -> CredentialRecord | None:
        try:
            credential = rotate_credential(self.docker, name, self.config.login_user)
        except DockerError as exc:
            message = f"Failed to set a new password for '{name}': {exc}"
            warnings.append(message)
            _step(op, "credential.rotate", status="warning", detail=message)
            return None
        self.store.save_credential(name, credential)
        _step(op, "credential.rotate", detail=f"{name}.pass")
        return credential

    def rotate_password(self, name: str, *, op: OperationScope | None = None) -> CredentialRecord:
        """Generate and apply a fresh credential for a running instance."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        self._require_running(name)
        credential = rotate_credential(self.docker, name, self.config.login_user)
        self.store.save_credential(name, credential)
        _step(op, "credential.rotate", detail=f"{name}.pass")
        if self.store.load_instance(name) is not None:
            self.store.update(name, {})
        return credential

    # Stop / remove ---------------------------------------------------
    def stop(self, name: str, *, op: OperationScope | None = None) -> str:
        """Stop the container of *name*; return ``stopped`` or ``already-stopped``."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        info = self.docker.inspect(name)
        if info is None:
            raise InstanceNotFoundError(f"Instance '{name}' has no container.")
        if not info.running:
            _step(op, "container.stop", status="skipped", detail=info.status)
            return "already-stopped"
        self.docker.stop(name)
        _step(op, "container.stop", detail=name)
        return "stopped"

    def remove(
        self,
        name: str,
        *,
        confirmed: bool = False,
        op: OperationScope | None = None,
    ) -> RemoveResult:
        """Delete the container of *name* and all of its records."""
        if not confirmed:
            raise ValueError(f"Removing instance '{name}' requires confirmation.")
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        info = self.docker.inspect(name)
        if info is None and not self.store.has_records(name):
            raise InstanceNotFoundError(f"Instance '{name}' does not exist.")

        removed = self.forwards.teardown(name)
        _step(op, "forward.teardown", detail=", ".join(removed) or "nothing")
        container_removed = False
        if info is not None:
            container_removed = self.docker.remove(name)
            _step(op, "container.remove", detail=name)
        else:
            _step(op, "container.remove", status="skipped", detail="no container")
        purged = self.store.purge(name)
        _step(op, "metadata.purge", detail=", ".join(purged) or "nothing")
        return RemoveResult(
            name=name,
            container_removed=container_removed,
            removed=[*removed, *purged],
        )

    # Resources -------------------------------------------------------
    def update_resources(
        self,
        name: str,
        *,
        memory: str | None = None,
        cpus: str | None = None,
        pids: int | None = None,
        op: OperationScope | None = None,
    ) -> InstanceRecord:
        """Apply new resource limits to the container and its record."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        memory_value = validate_memory(memory) if memory is not None else None
        cpus_value = validate_cpus(cpus) if cpus is not None else None
        pids_value = validate_pids(pids) if pids is not None else None
        changes: dict[str, object] = {
            key: value
            for key, value in (("memory", memory_value), ("cpus", cpus_value), ("pids", pids_value))
            if value is not None
        }
        if not changes:
            raise ValueError("Specify at least one of memory, cpus or pids.")
        if self.store.load_instance(name) is None:
            raise InstanceNotFoundError(f"Instance '{name}' has no record.")

        if self.docker.inspect(name) is not None:
            self.docker.update_resources(
                name,
                memory=memory_value,
                cpus=cpus_value,
                pids=pids_value,
            )
            _step(op, "container.update", detail=", ".join(f"{k}={v}" for k, v in changes.items()))
        else:
            _step(op, "container.update", status="skipped", detail="no container")
        record = self.store.update(name, changes)
        _step(op, "metadata.update", detail=", ".join(sorted(changes)))
        return record

    # Security --------------------------------------------------------
    def enable_security(self, name: str, *, op: OperationScope | None = None) -> SecurityResult:
        """Run the hardening hook in ``enable`` mode, rolling back on failure."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        self._require_running(name)
        record = self._record_or_default(name)
        return self._enable_security(name, record, op=op)

    def disable_security(self, name: str, *, op: OperationScope | None = None) -> SecurityResult:
        """Run the hardening hook in ``disable`` mode and clear the marker."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        self._require_running(name)
        record = self._record_or_default(name)
        hook = self.assets.harden_hook(record.template)
        result = self.hooks.run(name, hook, HookMode.DISABLE)
        warnings = self._hook_step(op, "hook.harden.disable", result)
        self._set_security(name, enabled=False, op=op)
        return SecurityResult(
            name=name,
            action="disabled",
            ok=result.ok,
            detail=result.detail,
            warnings=warnings,
        )

    def security_status(self, name: str, *, op: OperationScope | None = None) -> dict[str, object]:
        """Report the hardening marker and, when running, the hook's own status."""
        self.ensure_runtime(op)
        name = validate_instance_name(name)
        marker = self.store.load_security(name)
        payload: dict[str, object] = {
            "name": name,
            "marker": marker is not None,
            "applied_at": marker.applied_at if marker else None,
            "hook": None,
        }
        info = self.docker.inspect(name)
        if info is None and self.store.load_instance(name) is None:
            raise InstanceNotFoundError(f"Instance '{name}' does not exist.")
        if info is not None and info.running:
            record = self._record_or_default(name)
            hook = self.assets.harden_hook(record.template)
            result = self.hooks.run(name, hook, HookMode.STATUS)
            self._hook_step(op, "hook.harden.status", result)
            payload["hook"] = {
                "ok": result.ok,
                "returncode": result.returncode,
                "output": (result.stdout or result.stderr).strip(),
            }
        return payload

    def _enable_security(
        self,
        name: str,
        record: InstanceRecord,
        *,
        op: OperationScope | None,
    ) -> SecurityResult:
        hook = self.assets.harden_hook(record.template)
        result = self.hooks.run(name, hook, HookMode.ENABLE)
        warnings = self._hook_step(op, "hook.harden.enable", result)
        if result.ok:
            self._set_security(name, enabled=True, op=op)
            return SecurityResult(name=name, action="enabled", ok=True, detail=result.detail)

        rollback = self.hooks.run(name, hook, HookMode.DISABLE)
        warnings.extend(self._hook_step(op, "hook.harden.rollback", rollback))
        self._set_security(name, enabled=False, op=op)
        return SecurityResult(
            name=name,
            action="rolled-back",
            ok=False,
            detail=result.detail,
            warnings=warnings,
        )

    def _resume_security(
        self,
        name: str,
        template: str,
        *,
        op: OperationScope | None,
    ) -> list[str]:
        hook = self.assets.harden_hook(template)
        result = self.hooks.run(name, hook, HookMode.RESUME)
        return self._hook_step(op, "hook.harden.resume", result)

    def _set_security(self, name: str, *, enabled: bool, op: OperationScope | None) -> None:
        if enabled:
            self.store.mark_security(name)
        else:
            self.store.clear_security(name)
        state = SECURITY_ENABLED if enabled else SECURITY_DISABLED
        if self.store.load_instance(name) is not None:
            self.store.update(name, {"security": state})
        _step(op, "metadata.security", detail=state)

    def _hook_step(self, op: OperationScope | None, step: str, result: HookResult) -> list[str]:
        if result.ok:
            _step(op, step, detail=result.detail)
            return []
        _step(op, step, status="warning", detail=result.detail)
        return [result.detail]

    # Status ----------------------------------------------------------
    def status(self, name: str) -> InstanceStatus:
        """Return the observed state of *name*."""
        name = validate_instance_name(name)
        info = self.docker.inspect(name)
        record = self.store.load_instance(name)
        if info is None and record is None:
            raise InstanceNotFoundError(f"Instance '{name}' does not exist.")
        marker = self.store.load_security(name)
        status = InstanceStatus(
            name=name,
            state=info.status if info is not None else "absent",
            recorded=record is not None,
            image=(info.image if info is not None else "") or (record.image if record else ""),
            template=record.template if record else "",
            host_port=record.host_port if record else (info.ssh_port if info else None),
            ip_address=info.ip_address if info is not None else "",
            security=SECURITY_ENABLED if marker is not None else SECURITY_DISABLED,
            proxy=self.forwards.proxy_state(name),
            forwards=[item.to_dict() for item in self.forwards.list_forwards(name)],
        )
        if record is not None:
            status.memory = record.memory
            status.cpus = record.cpus
            status.pids = record.pids
            status.created_at = record.created_at
            status.last_started_at = record.last_started_at or ""
        return status

    def list_instances(self) -> list[InstanceStatus]:
        """Return the status of every recorded or managed instance."""
        names = set(self.store.instance_names())
        names.update(self.docker.managed_containers())
        return [self.status(name) for name in sorted(names)]

    # Helpers ---------------------------------------------------------
    def _build(
        self,
        template: str,
        image: str,
        *,
        no_cache: bool,
        op: OperationScope | None,
    ) -> list[str]:
        dockerfile = self.assets.dockerfile(template)
        warnings = self.assets.check(template)
        for warning in warnings:
            _step(op, "dockerfile.check", status="warning", detail=warning)
        self.docker.build_image(image, dockerfile.parent, dockerfile=dockerfile, no_cache=no_cache)
        _step(op, "image.build", detail=f"{image}{' (no cache)' if no_cache else ''}")
        return warnings

    def _require_running(self, name: str) -> ContainerInfo:
        info = self.docker.inspect(name)
        if info is None:
            if self.store.load_instance(name) is None:
                raise InstanceNotFoundError(f"Instance '{name}' does not exist.")
            raise InstanceStateError(f"Instance '{name}' has no container; start it first.")
        if not info.running:
            raise InstanceStateError(f"Instance '{name}' is not running (state: {info.status}).")
        return info

    def _record_or_default(self, name: str) -> InstanceRecord:
        record = self.store.load_instance(name)
        if record is not None:
            return record
        info = self._require_running(name)
        return self._adopt(name, info, op=None, persist=False)


__all__ = [
    "InstanceController",
    "InstanceNotFoundError",
    "InstanceStateError",
    "InstanceStatus",
    "LifecycleError",
    "RemoveResult",
    "SecurityResult",
    "StartResult",
    "validate_cpus",
    "validate_memory",
    "validate_pids",
]
