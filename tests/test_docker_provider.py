"""Tests for the docker CLI provider."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from devboxctl.providers import docker as docker_module
from devboxctl.providers.docker import (
    ContainerInfo,
    DockerError,
    DockerProvider,
    DockerUnavailableError,
    diagnose_docker_runtime,
)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _patch_run(
    monkeypatch: pytest.MonkeyPatch,
    responses: dict[str, DummyResult] | None = None,
) -> list[tuple[list[str], str | None]]:
    """Replace ``subprocess.run`` keyed on the docker sub-command."""
    calls: list[tuple[list[str], str | None]] = []
    table = responses or {}

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        argv = list(args)
        calls.append((argv, kwargs.get("input")))  # type: ignore[arg-type]
        return table.get(argv[1], DummyResult())

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)
    return calls


def test_run_container_builds_hardened_command(monkeypatch: pytest.MonkeyPatch) -> None:
    """Containers always restart unless stopped and drop new privileges."""
    calls = _patch_run(monkeypatch, {"run": DummyResult(stdout="abc123\n")})

    container_id = DockerProvider().run_container(
        "demo",
        "acm-lite:latest",
        network="devbox-net",
        publish=["30022:22"],
        labels={"devbox.managed": "true"},
        memory="1g",
        cpus="1.0",
        pids=256,
        command=["/usr/sbin/sshd", "-D"],
    )

    assert container_id == "abc123"
    argv = calls[0][0]
    assert argv[:2] == ["docker", "run"]
    assert "--restart" in argv and argv[argv.index("--restart") + 1] == "unless-stopped"
    assert argv[argv.index("--security-opt") + 1] == "no-new-privileges"
    assert argv[argv.index("--pids-limit") + 1] == "256"
    assert argv[argv.index("-p") + 1] == "30022:22"
    assert argv[argv.index("-l") + 1] == "devbox.managed=true"
    assert argv[-3:] == ["acm-lite:latest", "/usr/sbin/sshd", "-D"]
    assert "--read-only" not in argv


def test_failed_command_raises_with_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface the exit code and stderr."""
    _patch_run(monkeypatch, {"start": DummyResult(returncode=1, stderr="boom\n")})

    with pytest.raises(DockerError, match=r"docker start failed \(exit 1\): boom"):
        DockerProvider().start("demo")


def test_missing_binary_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing docker binary is reported as DockerError."""

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        raise FileNotFoundError(2, "No such file or directory", args[0])

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)

    provider = DockerProvider(docker_bin="/nonexistent/docker")
    assert provider.available() is False
    with pytest.raises(DockerError, match="not found"):
        provider.stop("demo")


def test_ensure_available_carries_hints(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unreachable daemon raises with diagnostic hints attached."""
    _patch_run(monkeypatch, {"info": DummyResult(returncode=1, stderr="Cannot connect")})
    monkeypatch.setattr(
        docker_module,
        "diagnose_docker_runtime",
        lambda socket: [f"{socket} missing"],
    )

    with pytest.raises(DockerUnavailableError) as excinfo:
        DockerProvider(socket=Path("/tmp/none.sock")).ensure_available()

    assert excinfo.value.hints == ["/tmp/none.sock missing"]


def test_inspect_parses_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    """``inspect`` returns the fields devboxctl relies on."""
    payload = [
        {
            "Name": "/demo",
            "Id": "f" * 64,
            "State": {"Status": "running"},
            "Config": {"Image": "acm-lite:latest", "Labels": {"devbox.managed": "true"}},
            "NetworkSettings": {
                "Networks": {"devbox-net": {"IPAddress": "172.18.0.5"}},
                "Ports": {"22/tcp": [{"HostIp": "0.0.0.0", "HostPort": "30022"}]},
            },
        }
    ]
    _patch_run(monkeypatch, {"container": DummyResult(stdout=json.dumps(payload))})

    info = DockerProvider().inspect("demo")

    assert info == ContainerInfo(
        name="demo",
        id="f" * 64,
        status="running",
        image="acm-lite:latest",
        ip_address="172.18.0.5",
        networks=("devbox-net",),
        labels={"devbox.managed": "true"},
        ssh_port=30022,
    )
    assert info is not None and info.running is True


def test_inspect_missing_container(monkeypatch: pytest.MonkeyPatch) -> None:
    """Missing containers inspect as ``None``; other failures raise."""
    _patch_run(
        monkeypatch,
        {"container": DummyResult(returncode=1, stderr="Error: No such container: demo")},
    )
    assert DockerProvider().inspect("demo") is None

    _patch_run(
        monkeypatch,
        {"container": DummyResult(returncode=1, stderr="permission denied")},
    )
    with pytest.raises(DockerError):
        DockerProvider().inspect("demo")


def test_remove_distinguishes_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    """``remove`` is idempotent for absent containers."""
    _patch_run(monkeypatch, {"rm": DummyResult(returncode=1, stderr="No such container: x")})
    assert DockerProvider().remove("x") is False

    _patch_run(monkeypatch)
    assert DockerProvider().remove("x") is True


def test_exec_passes_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    """Commands with stdin run interactively and receive the payload."""
    calls = _patch_run(monkeypatch)

    DockerProvider().exec_command("demo", ["chpasswd"], stdin="dev:pw\n")

    argv, stdin = calls[0]
    assert argv == ["docker", "exec", "-i", "-u", "root", "demo", "chpasswd"]
    assert stdin == "dev:pw\n"


def test_published_ports_and_managed_containers(monkeypatch: pytest.MonkeyPatch) -> None:
    """Port and container listings are parsed from ``docker ps`` output."""
    ps_output = "0.0.0.0:30022->22/tcp, :::30022->22/tcp\n127.0.0.1:8080->8080/tcp\n\n"
    _patch_run(monkeypatch, {"ps": DummyResult(stdout=ps_output)})
    assert DockerProvider().published_ports() == {30022, 8080}

    listing = (
        "demo\tdevbox.managed=true,devbox.name=demo\n"
        "demo-pf\tdevbox.forward=true,devbox.managed=true\n"
    )
    _patch_run(monkeypatch, {"ps": DummyResult(stdout=listing)})
    assert DockerProvider().managed_containers() == ["demo"]


def test_network_helpers(monkeypatch: pytest.MonkeyPatch) -> None:
    """Networks are created when missing and re-attachment is tolerated."""
    calls = _patch_run(monkeypatch, {"network": DummyResult(returncode=1, stderr="not found")})
    with pytest.raises(DockerError):
        DockerProvider().ensure_network("devbox-net")
    assert [argv[2] for argv, _ in calls] == ["inspect", "create"]

    _patch_run(monkeypatch, {"network": DummyResult()})
    assert DockerProvider().ensure_network("devbox-net") is False

    _patch_run(
        monkeypatch,
        {"network": DummyResult(returncode=1, stderr="endpoint with name demo already exists")},
    )
    assert DockerProvider().connect_network("devbox-net", "demo") is False


def test_update_resources_sets_swap(monkeypatch: pytest.MonkeyPatch) -> None:
    """Memory updates keep swap equal to the memory limit."""
    calls = _patch_run(monkeypatch)

    DockerProvider().update_resources("demo", memory="2g", cpus="1.5")

    assert calls[0][0] == [
        "docker", "update", "--memory", "2g", "--memory-swap", "2g", "--cpus", "1.5", "demo",
    ]


def test_diagnose_reports_missing_socket(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Diagnostics mention a missing socket and missing tooling."""
    monkeypatch.setattr(docker_module.shutil, "which", lambda name: None)

    hints = diagnose_docker_runtime(tmp_path / "docker.sock", ip_forward=tmp_path / "ip_forward")

    assert any("docker.sock" in hint for hint in hints)
    assert any("ip_forward" in hint for hint in hints)
    assert any("iptables is not installed" in hint for hint in hints)


def test_completed_process_type_is_returned(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without patching, ``_run_command`` hands back subprocess results."""

    def fake_run(args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(list(args), 0, "ok\n", "")

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)

    result = DockerProvider().start("demo")

    assert isinstance(result, subprocess.CompletedProcess)
    assert result.stdout == "ok\n"
