"""Pytest configuration helpers for the test suite.

Most tests drive the real :class:`DockerProvider` against :class:`FakeDocker`,
an in-memory emulation of the handful of ``docker`` sub-commands devboxctl
issues. The fake is wired in by replacing ``DockerProvider._run_command``.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace

import pytest

from devboxctl.assets import TemplateAssets
from devboxctl.config import AppConfig, load_config
from devboxctl.forwarding import ForwardReconciler
from devboxctl.lifecycle import InstanceController
from devboxctl.locking import LockManager
from devboxctl.ports import PortAllocator
from devboxctl.providers.docker import DockerError, DockerProvider
from devboxctl.providers.hooks import HOOK_TMP_PREFIX, HookExecutor
from devboxctl.state import MetadataStore
from devboxctl.templates import TemplateEngine

DOCKERFILE = """\
FROM debian:bookworm-slim
RUN apt-get update && apt-get install -y openssh-server
RUN useradd -m -s /bin/bash dev
EXPOSE 22
CMD ["/usr/sbin/sshd", "-D"]
"""

HOOK_SCRIPT = "#!/bin/sh\necho \"$1\"\n"

# Configuration the emulated hardening hook maintains inside a container.
JAIL_PATH = "/etc/fail2ban/jail.d/sshd.local"
JAIL_LINE = "enabled = true"

_RUN_OPTIONS_WITH_VALUE = {
    "--name",
    "--network",
    "--restart",
    "--memory",
    "--cpus",
    "--pids-limit",
    "--security-opt",
    "-l",
    "-p",
    "--entrypoint",
}


@dataclass
class FakeContainer:
    """State of one emulated container."""

    name: str
    id: str
    image: str
    status: str = "running"
    labels: dict[str, str] = field(default_factory=dict)
    publish: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    options: dict[str, str] = field(default_factory=dict)
    read_only: bool = False
    entrypoint: str | None = None
    command: list[str] = field(default_factory=list)
    files: dict[str, str] = field(default_factory=dict)

    @property
    def hardened(self) -> bool:
        return JAIL_LINE in self.files.get(JAIL_PATH, "")

    def host_ports(self) -> list[tuple[int, int]]:
        pairs: list[tuple[int, int]] = []
        for spec in self.publish:
            parts = spec.rsplit(":", 2)
            pairs.append((int(parts[-2]), int(parts[-1])))
        return pairs


@dataclass
class FakeDocker:
    """In-memory stand-in for the docker CLI."""

    daemon_up: bool = True
    sshd_ready: bool = True
    containers: dict[str, FakeContainer] = field(default_factory=dict)
    images: set[str] = field(default_factory=set)
    networks: set[str] = field(default_factory=set)
    calls: list[list[str]] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    hook_results: dict[tuple[str, str], tuple[int, str, str]] = field(default_factory=dict)
    hook_calls: list[tuple[str, str, str]] = field(default_factory=list)
    passwords: dict[str, str] = field(default_factory=dict)
    _next_id: int = 0

    # Helpers used by tests -------------------------------------------
    def fail(self, verb: str, message: str = "simulated failure") -> None:
        """Make every later ``docker <verb>`` invocation fail."""
        self.failures[verb] = message

    def add_container(self, name: str, image: str = "acm-lite:latest", **kwargs: object) -> FakeContainer:
        """Register a container as if it had been created earlier."""
        self._next_id += 1
        container = FakeContainer(name=name, id=f"{self._next_id:064x}", image=image, **kwargs)
        self.containers[name] = container
        return container

    def commands(self, verb: str) -> list[list[str]]:
        """Return recorded invocations of ``docker <verb>``."""
        return [call for call in self.calls if call and call[0] == verb]

    # Entry point -----------------------------------------------------
    def handle(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        argv = list(args)[1:]
        self.calls.append(argv)
        rc, stdout, stderr = self._dispatch(argv, stdin)
        result = subprocess.CompletedProcess(list(args), rc, stdout, stderr)
        if check and rc != 0:
            message = stderr.strip() or stdout.strip() or "no output"
            raise DockerError(f"{error_prefix} failed (exit {rc}): {message}")
        return result

    def _dispatch(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        verb = argv[0]
        if verb == "info":
            return (0, "Server Version: 27.0\n", "") if self.daemon_up else (1, "", "Cannot connect")
        if verb in self.failures:
            return 1, "", self.failures[verb]
        handler = getattr(self, f"_do_{verb}", None)
        if handler is None:
            return 1, "", f"unknown command {verb}"
        return handler(argv[1:], stdin)

    # Sub-commands ----------------------------------------------------
    def _do_image(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        image = argv[-1]
        if image in self.images:
            return 0, "[{}]", ""
        return 1, "", f"Error: No such image: {image}"

    def _do_build(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        image = argv[argv.index("-t") + 1]
        self.images.add(image)
        return 0, f"Successfully tagged {image}\n", ""

    def _do_container(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        name = argv[-1]
        container = self.containers.get(name)
        if container is None:
            return 1, "[]", f"Error: No such container: {name}"
        ports: dict[str, list[dict[str, str]]] = {}
        for host_port, container_port in container.host_ports():
            ports.setdefault(f"{container_port}/tcp", []).append(
                {"HostIp": "0.0.0.0", "HostPort": str(host_port)}
            )
        payload = {
            "Name": f"/{container.name}",
            "Id": container.id,
            "State": {"Status": container.status},
            "Config": {"Image": container.image, "Labels": dict(container.labels)},
            "NetworkSettings": {
                "Networks": {
                    net: {"IPAddress": f"172.18.0.{index + 2}"}
                    for index, net in enumerate(container.networks)
                },
                "Ports": ports,
            },
        }
        return 0, json.dumps([payload]), ""

    def _do_run(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        options: dict[str, str] = {}
        labels: dict[str, str] = {}
        publish: list[str] = []
        read_only = False
        entrypoint = None
        index = 0
        while index < len(argv) and argv[index].startswith("-"):
            option = argv[index]
            if option in _RUN_OPTIONS_WITH_VALUE:
                value = argv[index + 1]
                if option == "-l":
                    key, _, label_value = value.partition("=")
                    labels[key] = label_value
                elif option == "-p":
                    publish.append(value)
                elif option == "--entrypoint":
                    entrypoint = value
                else:
                    options[option] = value
                index += 2
                continue
            if option == "--read-only":
                read_only = True
            index += 1
        image, command = argv[index], argv[index + 1 :]
        name = options["--name"]
        if name in self.containers:
            return 125, "", f'Conflict. The container name "/{name}" is already in use.'
        requested = {int(spec.rsplit(":", 2)[-2]) for spec in publish}
        if requested & self._published():
            return 125, "", "Bind for 0.0.0.0 failed: port is already allocated"
        container = self.add_container(
            name,
            image=image,
            labels=labels,
            publish=publish,
            networks=[options["--network"]],
            options=options,
            read_only=read_only,
            entrypoint=entrypoint,
            command=list(command),
        )
        return 0, container.id + "\n", ""

    def _do_start(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        container = self.containers.get(argv[0])
        if container is None:
            return 1, "", f"Error: No such container: {argv[0]}"
        container.status = "running"
        return 0, argv[0] + "\n", ""

    def _do_stop(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        container = self.containers.get(argv[0])
        if container is None:
            return 1, "", f"Error: No such container: {argv[0]}"
        container.status = "exited"
        return 0, argv[0] + "\n", ""

    def _do_rm(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        name = argv[-1]
        if self.containers.pop(name, None) is None:
            return 1, "", f"Error response from daemon: No such container: {name}"
        return 0, name + "\n", ""

    def _do_update(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        container = self.containers.get(argv[-1])
        if container is None:
            return 1, "", f"Error: No such container: {argv[-1]}"
        for option, value in zip(argv[:-1:2], argv[1:-1:2], strict=True):
            container.options[option] = value
        return 0, argv[-1] + "\n", ""

    def _do_exec(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        if argv[0] == "-i":
            argv = argv[1:]
        name, command = argv[2], argv[3:]
        container = self.containers.get(name)
        if container is None:
            return 1, "", f"Error: No such container: {name}"
        if container.status != "running":
            return 1, "", f"Error response from daemon: container {name} is not running"
        program = command[0]
        if program == "pgrep":
            return (0, "1\n", "") if self.sshd_ready else (1, "", "")
        if program in {"sh", "chmod"}:
            return 0, "", ""
        if program == "chpasswd":
            self.passwords[name] = (stdin or "").strip()
            return 0, "", ""
        if program == "rm":
            container.files.pop(command[-1], None)
            return 0, "", ""
        if program in container.files:
            script = program[len(HOOK_TMP_PREFIX) :]
            mode = command[1]
            self.hook_calls.append((name, script, mode))
            rc, stdout, stderr = self.hook_results.get((script, mode), (0, f"{mode}: ok\n", ""))
            if rc == 0 and mode in {"enable", "resume"}:
                lines = container.files.get(JAIL_PATH, "").splitlines()
                if JAIL_LINE not in lines:
                    lines.append(JAIL_LINE)
                container.files[JAIL_PATH] = "\n".join(lines) + "\n"
            elif mode == "disable":
                container.files.pop(JAIL_PATH, None)
            return rc, stdout, stderr
        return 127, "", f"exec: {program}: executable file not found"

    def _do_cp(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        source, target = argv
        name, _, destination = target.partition(":")
        container = self.containers.get(name)
        if container is None:
            return 1, "", f"Error: No such container: {name}"
        container.files[destination] = Path(source).read_text(encoding="utf-8")
        return 0, "", ""

    def _do_ps(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        lines: list[str] = []
        if "-a" in argv:
            for container in self.containers.values():
                if container.labels.get("devbox.managed") != "true":
                    continue
                labels = ",".join(f"{key}={value}" for key, value in container.labels.items())
                lines.append(f"{container.name}\t{labels}")
        else:
            for container in self.containers.values():
                if container.status != "running":
                    continue
                lines.append(
                    ", ".join(
                        f"0.0.0.0:{host}->{inner}/tcp" for host, inner in container.host_ports()
                    )
                )
        return 0, "\n".join(lines) + ("\n" if lines else ""), ""

    def _do_network(self, argv: list[str], stdin: str | None) -> tuple[int, str, str]:
        action, network = argv[0], argv[1]
        if action == "inspect":
            if network in self.networks:
                return 0, "[{}]", ""
            return 1, "[]", f"Error: No such network: {network}"
        if action == "create":
            self.networks.add(network)
            return 0, "net-id\n", ""
        container = self.containers.get(argv[2])
        if container is None:
            return 1, "", f"Error: No such container: {argv[2]}"
        if network in container.networks:
            return 1, "", f"endpoint with name {argv[2]} already exists in network {network}"
        container.networks.append(network)
        return 0, "", ""

    def _published(self) -> set[int]:
        ports: set[int] = set()
        for container in self.containers.values():
            if container.status == "running":
                ports.update(host for host, _ in container.host_ports())
        return ports


def write_template(
    root: Path,
    name: str = "default",
    *,
    harden: bool = True,
    firstboot: bool = False,
    dockerfile: str = DOCKERFILE,
) -> Path:
    """Create a template directory under *root*."""
    template_dir = root / name
    template_dir.mkdir(parents=True, exist_ok=True)
    (template_dir / "Dockerfile").write_text(dockerfile, encoding="utf-8")
    if harden:
        (template_dir / "harden.sh").write_text(HOOK_SCRIPT, encoding="utf-8")
    if firstboot:
        (template_dir / "firstboot.sh").write_text(HOOK_SCRIPT, encoding="utf-8")
    return template_dir


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a config rooted in *tmp_path*, isolated from the real environment."""
    values: dict[str, object] = {
        "workdir": str(tmp_path / "work"),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 2.0,
        "ports": {"base": 40022, "max_tries": 5},
        "readiness": {"attempts": 2, "interval": 0.01, "probe_timeout": 0.01},
    }
    values.update(overrides)
    return load_config(config_file=tmp_path / "absent.yml", env={}, overrides=values)


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch) -> FakeDocker:
    """Route every docker CLI invocation to a fresh :class:`FakeDocker`."""
    fake = FakeDocker()

    def _run_command(
        self: DockerProvider,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        stdin: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return fake.handle(args, check=check, error_prefix=error_prefix, stdin=stdin)

    monkeypatch.setattr(DockerProvider, "_run_command", _run_command)
    return fake


@pytest.fixture
def devbox(tmp_path: Path, fake_docker: FakeDocker) -> SimpleNamespace:
    """Fully wired controller whose host probes always report free ports."""
    config = make_config(tmp_path)
    write_template(config.templates_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    store = MetadataStore(config.state_dir, locks=locks)
    docker = DockerProvider()
    ports = PortAllocator(
        store=store,
        docker=docker,
        reserved=config.ports.reserved,
        step=config.ports.step,
        connect_probe=lambda port, timeout: False,
        bind_probe=lambda port: False,
    )
    forwards = ForwardReconciler(
        config=config,
        store=store,
        docker=docker,
        ports=ports,
        templates=TemplateEngine.with_overrides(None),
    )
    controller = InstanceController(
        config=config,
        store=store,
        docker=docker,
        ports=ports,
        hooks=HookExecutor(docker=docker),
        assets=TemplateAssets(config.templates_dir),
        forwards=forwards,
        sleep=lambda seconds: None,
        connect_probe=lambda port, timeout: True,
    )
    return SimpleNamespace(
        config=config,
        store=store,
        docker=docker,
        ports=ports,
        forwards=forwards,
        controller=controller,
        fake=fake_docker,
    )
