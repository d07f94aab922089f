"""Docker CLI provider used to drive instance and proxy containers."""
from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

_PUBLISHED_PORT_PATTERN = re.compile(r":(\d+)->")
_MISSING_MARKERS = ("no such container", "no such object", "not found")


class DockerError(RuntimeError):
    """Raised when a docker command fails."""


class DockerUnavailableError(DockerError):
    """Raised when the docker daemon cannot be reached."""

    def __init__(self, message: str, hints: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.hints = list(hints)


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Subset of ``docker inspect`` output devboxctl relies on."""

    name: str
    id: str
    status: str
    image: str
    ip_address: str = ""
    networks: tuple[str, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    ssh_port: int | None = None

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is running."""
        return self.status == "running"

    @classmethod
    def from_inspect(cls, payload: Mapping[str, object]) -> ContainerInfo:
        """Build an instance from one element of ``docker inspect`` output."""
        state = payload.get("State")
        config = payload.get("Config")
        settings = payload.get("NetworkSettings")
        status = str(state.get("Status", "unknown")) if isinstance(state, Mapping) else "unknown"
        image = str(config.get("Image", "")) if isinstance(config, Mapping) else ""
        labels_raw = config.get("Labels") if isinstance(config, Mapping) else None
        labels = (
            {str(k): str(v) for k, v in labels_raw.items()}
            if isinstance(labels_raw, Mapping)
            else {}
        )
        networks: list[str] = []
        ip_address = ""
        if isinstance(settings, Mapping):
            raw_networks = settings.get("Networks")
            if isinstance(raw_networks, Mapping):
                for net_name, net in raw_networks.items():
                    networks.append(str(net_name))
                    if not ip_address and isinstance(net, Mapping):
                        ip_address = str(net.get("IPAddress") or "")
        ssh_port = None
        if isinstance(settings, Mapping):
            bindings = settings.get("Ports")
            ssh_bindings = bindings.get("22/tcp") if isinstance(bindings, Mapping) else None
            if isinstance(ssh_bindings, list):
                for binding in ssh_bindings:
                    host_port = binding.get("HostPort") if isinstance(binding, Mapping) else None
                    if host_port and str(host_port).isdigit():
                        ssh_port = int(host_port)
                        break
        return cls(
            name=str(payload.get("Name", "")).lstrip("/"),
            id=str(payload.get("Id", "")),
            status=status,
            image=image,
            ip_address=ip_address,
            networks=tuple(networks),
            labels=labels,
            ssh_port=ssh_port,
        )


@dataclass(slots=True)
class DockerProvider:
    """Thin wrapper over the ``docker`` command line client."""

    docker_bin: str = "docker"
    socket: Path = Path("/var/run/docker.sock")

    # Daemon ----------------------------------------------------------
    def available(self) -> bool:
        """Return whether ``docker info`` succeeds."""
        try:
            result = self._docker(["info"], check=False)
        except DockerError:
            return False
        return result.returncode == 0

    def ensure_available(self) -> None:
        """Raise :class:`DockerUnavailableError` with hints when unreachable."""
        if self.available():
            return
        raise DockerUnavailableError(
            "Docker daemon is not running or the current user cannot access it.",
            hints=diagnose_docker_runtime(self.socket),
        )

    # Images ----------------------------------------------------------
    def image_exists(self, image: str) -> bool:
        """Return whether *image* is present locally."""
        result = self._docker(["image", "inspect", image], check=False)
        return result.returncode == 0

    def build_image(
        self,
        image: str,
        context_dir: Path,
        *,
        dockerfile: Path | None = None,
        no_cache: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Build *image* from *context_dir*."""
        args = ["build", "-t", image]
        if dockerfile is not None:
            args.extend(["-f", str(dockerfile)])
        if no_cache:
            args.append("--no-cache")
        args.append(str(context_dir))
        return self._docker(args)

    # Containers ------------------------------------------------------
    def inspect(self, name: str) -> ContainerInfo | None:
        """Return container details or ``None`` when it does not exist."""
        result = self._docker(["container", "inspect", name], check=False)
        if result.returncode != 0:
            if _is_missing(result):
                return None
            raise DockerError(
                f"docker container inspect failed (exit {result.returncode}): "
                f"{_output(result)}"
            )
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise DockerError(f"docker container inspect returned invalid JSON: {exc}") from exc
        if not isinstance(payload, list) or not payload or not isinstance(payload[0], Mapping):
            return None
        return ContainerInfo.from_inspect(payload[0])

    def run_container(
        self,
        name: str,
        image: str,
        *,
        network: str,
        publish: Sequence[str] = (),
        labels: Mapping[str, str] | None = None,
        memory: str,
        cpus: str,
        pids: int,
        read_only: bool = False,
        entrypoint: str | None = None,
        command: Sequence[str] = (),
    ) -> str:
        """Create and start a detached container; return its id."""
        args = [
            "run",
            "-d",
            "--name",
            name,
            "--network",
            network,
            "--restart",
            "unless-stopped",
            "--memory",
            memory,
            "--cpus",
            str(cpus),
            "--pids-limit",
            str(pids),
            "--security-opt",
            "no-new-privileges",
        ]
        if read_only:
            args.append("--read-only")
        for key, value in (labels or {}).items():
            args.extend(["-l", f"{key}={value}"])
        for spec in publish:
            args.extend(["-p", spec])
        if entrypoint is not None:
            args.extend(["--entrypoint", entrypoint])
        args.append(image)
        args.extend(command)
        result = self._docker(args)
        return (result.stdout or "").strip()

    def start(self, name: str) -> subprocess.CompletedProcess[str]:
        """Start an existing container."""
        return self._docker(["start", name])

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        """Stop a running container."""
        return self._docker(["stop", name])

    def remove(self, name: str) -> bool:
        """Force-remove *name*; return ``False`` when it did not exist."""
        result = self._docker(["rm", "-f", name], check=False)
        if result.returncode == 0:
            return True
        if _is_missing(result):
            return False
        raise DockerError(f"docker rm -f {name} failed (exit {result.returncode}): {_output(result)}")

    def update_resources(
        self,
        name: str,
        *,
        memory: str | None = None,
        cpus: str | None = None,
        pids: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Apply new resource ceilings to a container."""
        args = ["update"]
        if memory is not None:
            args.extend(["--memory", memory, "--memory-swap", memory])
        if cpus is not None:
            args.extend(["--cpus", str(cpus)])
        if pids is not None:
            args.extend(["--pids-limit", str(pids)])
        args.append(name)
        return self._docker(args)

    def exec_command(
        self,
        name: str,
        command: Sequence[str],
        *,
        user: str = "root",
        stdin: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *name*."""
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        args.extend(["-u", user, name, *command])
        return self._docker(args, check=check, stdin=stdin, error_prefix=f"docker exec {name}")

    def copy_to(self, name: str, source: Path, destination: str) -> subprocess.CompletedProcess[str]:
        """Copy a host file into a container."""
        return self._docker(["cp", str(source), f"{name}:{destination}"])

    def published_ports(self) -> set[int]:
        """Return every host port published by any container."""
        result = self._docker(["ps", "--format", "{{.Ports}}"], check=False)
        if result.returncode != 0:
            return set()
        return {int(match) for match in _PUBLISHED_PORT_PATTERN.findall(result.stdout or "")}

    def managed_containers(self) -> list[str]:
        """Return names of devboxctl-managed instance containers (excluding proxies)."""
        result = self._docker(
            [
                "ps",
                "-a",
                "--filter",
                "label=devbox.managed=true",
                "--format",
                "{{.Names}}\t{{.Labels}}",
            ],
            check=False,
        )
        if result.returncode != 0:
            return []
        names: list[str] = []
        for line in (result.stdout or "").splitlines():
            container, _, labels = line.partition("\t")
            container = container.strip()
            if not container or "devbox.forward=true" in labels:
                continue
            if container not in names:
                names.append(container)
        return names

    # Networks --------------------------------------------------------
    def ensure_network(self, network: str) -> bool:
        """Create *network* when missing; return whether it was created."""
        result = self._docker(["network", "inspect", network], check=False)
        if result.returncode == 0:
            return False
        self._docker(["network", "create", network])
        return True

    def connect_network(self, network: str, name: str) -> bool:
        """Attach *name* to *network*; return ``False`` when already attached."""
        result = self._docker(["network", "connect", network, name], check=False)
        if result.returncode == 0:
            return True
        if "already exists" in _output(result).lower():
            return False
        raise DockerError(
            f"docker network connect {network} {name} failed "
            f"(exit {result.returncode}): {_output(result)}"
        )

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        stdin: str | None = None,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        prefix = error_prefix or f"{self.docker_bin} {args[0]}"
        return self._run_command(command, check=check, error_prefix=prefix, stdin=stdin)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                input=stdin,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise DockerError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            raise DockerError(f"{error_prefix} failed (exit {result.returncode}): {_output(result)}")
        return result


def _output(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip() or "no output"


def _is_missing(result: subprocess.CompletedProcess[str]) -> bool:
    text = _output(result).lower()
    return any(marker in text for marker in _MISSING_MARKERS)


def diagnose_docker_runtime(
    socket: Path = Path("/var/run/docker.sock"),
    *,
    ip_forward: Path = Path("/proc/sys/net/ipv4/ip_forward"),
) -> list[str]:
    """Return hints explaining why the docker daemon may be unreachable."""
    hints: list[str] = []
    is_root = os.geteuid() == 0
    if not socket.exists():
        if not is_root:
            hints.append(
                f"Not running as root and {socket} is missing. Use sudo or join the docker group."
            )
        else:
            hints.append(f"{socket} does not exist; the docker daemon is probably not running.")
    elif not os.access(socket, os.W_OK):
        hints.append(f"{socket} exists but is not writable by the current user.")

    if ip_forward.exists():
        if not os.access(ip_forward, os.W_OK) and is_root:
            hints.append(
                f"{ip_forward} is read-only. Docker needs IP forwarding; run on the host "
                "rather than inside a restricted container."
            )
    else:
        hints.append(f"{ip_forward} is missing; the kernel may lack required networking support.")

    iptables = shutil.which("iptables")
    if iptables is None:
        hints.append("iptables is not installed; docker's default networking will not work.")
    else:
        try:
            probe = subprocess.run(  # noqa: S603
                [iptables, "-L"],
                capture_output=True,
                text=True,
                check=False,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            hints.append(f"Running iptables failed: {exc}.")
        else:
            if probe.returncode != 0:
                first_line = (probe.stderr or probe.stdout or "").strip().splitlines()
                detail = first_line[0] if first_line else "CAP_NET_ADMIN required"
                hints.append(f"Running iptables failed: {detail}.")

    pgrep = shutil.which("pgrep")
    if pgrep is not None:
        try:
            daemon = subprocess.run(  # noqa: S603
                [pgrep, "-x", "dockerd"],
                capture_output=True,
                text=True,
                check=False,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            daemon = None
        if daemon is not None and daemon.returncode != 0:
            hints.append(
                "No dockerd process found; start it with `systemctl start docker` or run dockerd."
            )
    return hints


__all__ = [
    "ContainerInfo",
    "DockerError",
    "DockerProvider",
    "DockerUnavailableError",
    "diagnose_docker_runtime",
]
