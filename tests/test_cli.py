"""Tests for the devboxctl CLI."""
from __future__ import annotations

import functools
import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from conftest import FakeDocker, write_template
from devboxctl import __version__
from devboxctl import cli as cli_module
from devboxctl.cli import app
from devboxctl.lifecycle import InstanceController
from devboxctl.ports import PortAllocator
from devboxctl.state import MetadataStore

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    workdir = tmp_path / "work"
    config: dict[str, object] = {
        "workdir": str(workdir),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 2.0,
        "ports": {"base": 40022, "max_tries": 5},
        "readiness": {"attempts": 1, "interval": 0.01, "probe_timeout": 0.01},
    }
    if config_overrides:
        config.update(config_overrides)
    config_path = tmp_path / "devboxctl.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    write_template(workdir / "templates")
    env = {"DEVBOX_CONFIG_FILE": str(config_path), "DEVBOX_ASSUME_YES": "0"}
    return env, workdir / ".devbox"


@pytest.fixture
def docker(fake_docker: FakeDocker, monkeypatch: pytest.MonkeyPatch) -> FakeDocker:
    """Fake docker plus host probes that never see real sockets."""
    monkeypatch.setattr(
        cli_module,
        "PortAllocator",
        functools.partial(
            PortAllocator,
            connect_probe=lambda port, timeout: False,
            bind_probe=lambda port: False,
        ),
    )
    monkeypatch.setattr(InstanceController, "wait_ready", lambda self, name, port: True)
    return fake_docker


def _operations(state_dir: Path) -> list[dict[str, object]]:
    log_path = state_dir / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Single-host control layer" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits JSON with the resolved configuration."""
    env, state_dir = _prepare_environment(tmp_path, config_overrides={"network": "lab-net"})

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["network"] == "lab-net"
    assert payload["state_dir"] == str(state_dir)


def test_invalid_config_exits_with_environment_code(tmp_path: Path) -> None:
    """Config errors are environment failures."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"bogus": 1})

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 3
    assert "Configuration error" in result.stdout


def test_instance_start_json_reports_credential(tmp_path: Path, docker: FakeDocker) -> None:
    """Starting an instance prints the new password once and never logs it."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["instance", "start", "demo", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["action"] == "created"
    status = payload["status"]
    assert isinstance(status, dict)
    assert status["host_port"] == 40022
    credential = payload["credential"]
    assert isinstance(credential, dict)
    password = credential["password"]
    assert docker.passwords["demo"] == f"dev:{password}"

    (record,) = _operations(state_dir)
    assert record["command"] == "instance start"
    assert record["rc"] == 0
    assert str(password) not in (state_dir / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert record["lock_wait_ms"] is not None


def test_instance_start_table_and_status(tmp_path: Path, docker: FakeDocker) -> None:
    """Human output shows the SSH hint; status and list see the instance."""
    env, _ = _prepare_environment(tmp_path)

    started = runner.invoke(app, ["instance", "start", "demo"], env=env)
    assert started.exit_code == 0, started.stdout
    assert "ssh dev@<host> -p 40022" in started.stdout
    assert "Password (dev)" in started.stdout

    again = runner.invoke(app, ["instance", "start", "demo"], env=env)
    assert again.exit_code == 0
    assert "already running" in again.stdout

    status = runner.invoke(app, ["instance", "status", "demo", "--json"], env=env)
    assert status.exit_code == 0
    assert _extract_json(status.stdout)["state"] == "running"

    listing = runner.invoke(app, ["instance", "list"], env=env)
    assert listing.exit_code == 0
    assert "demo" in listing.stdout

    overall = runner.invoke(app, ["status", "--json"], env=env)
    assert overall.exit_code == 0
    assert _extract_json(overall.stdout)["docker"] == "available"


def test_instance_start_invalid_name(tmp_path: Path, docker: FakeDocker) -> None:
    """Invalid names are validation errors."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["instance", "start", "bad name"], env=env)

    assert result.exit_code == 2
    assert docker.commands("run") == []
    (record,) = _operations(state_dir)
    assert record["rc"] == 2


def test_instance_start_without_docker(tmp_path: Path, docker: FakeDocker) -> None:
    """An unreachable daemon is an environment failure."""
    env, _ = _prepare_environment(tmp_path)
    docker.daemon_up = False

    result = runner.invoke(app, ["instance", "start", "demo"], env=env)

    assert result.exit_code == 3
    assert "Docker daemon is not running" in result.stdout


def test_instance_start_port_exhaustion(tmp_path: Path, docker: FakeDocker) -> None:
    """No free SSH port is an allocation failure."""
    env, _ = _prepare_environment(tmp_path)
    env["DEVBOX_RESERVED_HOST_PORTS"] = "40022,40122,40222,40322,40422"

    result = runner.invoke(app, ["instance", "start", "demo"], env=env)

    assert result.exit_code == 5
    assert "demo" not in docker.containers


def test_instance_start_build_failure(tmp_path: Path, docker: FakeDocker) -> None:
    """Docker failures are provider errors and leave no record."""
    env, state_dir = _prepare_environment(tmp_path)
    docker.fail("build", "network unreachable")

    result = runner.invoke(app, ["instance", "start", "demo"], env=env)

    assert result.exit_code == 4
    (record,) = _operations(state_dir)
    assert any("network unreachable" in error for error in record["result"]["errors"])  # type: ignore[index]
    assert MetadataStore(state_dir).load_instance("demo") is None


def test_instance_stop_and_remove(tmp_path: Path, docker: FakeDocker) -> None:
    """Stop keeps metadata; remove asks for confirmation and purges it."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)

    stopped = runner.invoke(app, ["instance", "stop", "demo"], env=env)
    assert stopped.exit_code == 0
    assert docker.containers["demo"].status == "exited"
    assert MetadataStore(state_dir).load_instance("demo") is not None

    declined = runner.invoke(app, ["instance", "remove", "demo"], env=env, input="n\n")
    assert declined.exit_code == 0
    assert "Cancelled" in declined.stdout
    assert "demo" in docker.containers

    removed = runner.invoke(app, ["instance", "remove", "demo", "--yes"], env=env)
    assert removed.exit_code == 0
    assert "demo" not in docker.containers
    assert MetadataStore(state_dir).has_records("demo") is False


def test_remove_honours_assume_yes_env(tmp_path: Path, docker: FakeDocker) -> None:
    """``DEVBOX_ASSUME_YES`` skips the confirmation prompt."""
    env, _ = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)
    env["DEVBOX_ASSUME_YES"] = "1"

    result = runner.invoke(app, ["instance", "remove", "demo"], env=env)

    assert result.exit_code == 0
    assert "demo" not in docker.containers


def test_instance_remove_missing(tmp_path: Path, docker: FakeDocker) -> None:
    """Removing an unknown instance is a validation error."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--yes", "instance", "remove", "ghost"], env=env)

    assert result.exit_code == 2


def test_instance_password_and_resources(tmp_path: Path, docker: FakeDocker) -> None:
    """Passwords rotate on demand; resource limits are updated."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)

    rotated = runner.invoke(app, ["instance", "password", "demo", "--json"], env=env)
    assert rotated.exit_code == 0
    payload = _extract_json(rotated.stdout)
    assert docker.passwords["demo"] == f"dev:{payload['password']}"

    resized = runner.invoke(app, ["instance", "resources", "demo", "--cpus", "2.5"], env=env)
    assert resized.exit_code == 0
    record = MetadataStore(state_dir).load_instance("demo")
    assert record is not None and record.cpus == "2.5"

    invalid = runner.invoke(app, ["instance", "resources", "demo", "--memory", "lots"], env=env)
    assert invalid.exit_code == 2


def test_security_enable_failure_rolls_back(tmp_path: Path, docker: FakeDocker) -> None:
    """A failing hardening hook exits with the provider code and no marker."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)
    docker.hook_results[("harden.sh", "enable")] = (1, "", "cannot harden")

    result = runner.invoke(app, ["security", "enable", "demo"], env=env)

    assert result.exit_code == 4
    assert "rolled back" in result.stdout
    assert MetadataStore(state_dir).load_security("demo") is None
    assert docker.containers["demo"].status == "running"


def test_security_enable_status_disable(tmp_path: Path, docker: FakeDocker) -> None:
    """Hardening can be enabled, inspected and disabled."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)

    enabled = runner.invoke(app, ["security", "enable", "demo"], env=env)
    assert enabled.exit_code == 0
    assert MetadataStore(state_dir).load_security("demo") is not None

    status = runner.invoke(app, ["security", "status", "demo", "--json"], env=env)
    assert status.exit_code == 0
    assert _extract_json(status.stdout)["marker"] is True

    disabled = runner.invoke(app, ["security", "disable", "demo"], env=env)
    assert disabled.exit_code == 0
    assert MetadataStore(state_dir).load_security("demo") is None


def test_forward_add_list_remove(tmp_path: Path, docker: FakeDocker) -> None:
    """Forwards are added, listed and removed through the relay proxy."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)

    added = runner.invoke(app, ["forward", "add", "demo", "8080", "80"], env=env)
    assert added.exit_code == 0, added.stdout
    assert docker.containers["demo-pf"].publish == ["127.0.0.1:8080:8080"]

    listed = runner.invoke(app, ["forward", "list", "demo", "--json"], env=env)
    assert listed.exit_code == 0
    assert _extract_json(listed.stdout)["forwards"] == [
        {"bind": "127.0.0.1", "host_port": 8080, "container_port": 80, "status": "active"}
    ]

    ports = runner.invoke(app, ["ports", "list", "--json"], env=env)
    assert ports.exit_code == 0
    kinds = {(entry["port"], entry["kind"]) for entry in json.loads(ports.stdout)["ports"]}
    assert kinds == {(8080, "forward"), (40022, "ssh")}

    removed = runner.invoke(app, ["forward", "remove", "demo", "8080", "80"], env=env)
    assert removed.exit_code == 0
    assert "demo-pf" not in docker.containers
    assert MetadataStore(state_dir).load_forwards("demo") == []


def test_forward_add_rejects_bad_input(tmp_path: Path, docker: FakeDocker) -> None:
    """Bad ports and stopped instances are validation errors."""
    env, _ = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)

    bad_port = runner.invoke(app, ["forward", "add", "demo", "99999", "80"], env=env)
    assert bad_port.exit_code == 2

    bad_bind = runner.invoke(app, ["forward", "add", "demo", "8080", "80", "localhost"], env=env)
    assert bad_bind.exit_code == 2

    runner.invoke(app, ["instance", "stop", "demo"], env=env)
    stopped = runner.invoke(app, ["forward", "add", "demo", "8080", "80"], env=env)
    assert stopped.exit_code == 2
    assert "must be running" in stopped.stdout


def test_forward_proxy_failure_is_provider_error(tmp_path: Path, docker: FakeDocker) -> None:
    """A proxy that cannot start exits with the provider code."""
    env, state_dir = _prepare_environment(tmp_path)
    runner.invoke(app, ["instance", "start", "demo"], env=env)
    docker.fail("run", "pull access denied")

    result = runner.invoke(app, ["forward", "add", "demo", "8080", "80"], env=env)

    assert result.exit_code == 4
    assert MetadataStore(state_dir).load_forwards("demo") == []


def test_image_build(tmp_path: Path, docker: FakeDocker) -> None:
    """Images can be built and rebuilt without cache."""
    env, _ = _prepare_environment(tmp_path)

    built = runner.invoke(app, ["image", "build", "--json"], env=env)
    assert built.exit_code == 0
    assert _extract_json(built.stdout)["image"] == "acm-lite:latest"

    rebuilt = runner.invoke(app, ["image", "rebuild"], env=env)
    assert rebuilt.exit_code == 0
    assert "--no-cache" in docker.commands("build")[-1]

    missing = runner.invoke(app, ["image", "build", "--template", "ghost"], env=env)
    assert missing.exit_code == 2


def test_runtime_check(tmp_path: Path, docker: FakeDocker) -> None:
    """Runtime check lists templates and fails when docker is down."""
    env, _ = _prepare_environment(tmp_path)
    write_template(tmp_path / "work" / "templates", "web")

    ok = runner.invoke(app, ["runtime", "check", "--json"], env=env)
    assert ok.exit_code == 0
    assert _extract_json(ok.stdout)["templates"] == ["default", "web"]

    docker.daemon_up = False
    down = runner.invoke(app, ["runtime", "check"], env=env)
    assert down.exit_code == 3


def test_instance_named_devboxctl_is_not_blocked_by_global_lock(
    tmp_path: Path,
    docker: FakeDocker,
) -> None:
    """Mutating commands work for an instance sharing the global lock's name."""
    env, _ = _prepare_environment(tmp_path)
    env["DEVBOX_LOCK_TIMEOUT"] = "0.3"

    started = runner.invoke(app, ["instance", "start", "devboxctl"], env=env)
    stopped = runner.invoke(app, ["instance", "stop", "devboxctl"], env=env)

    assert started.exit_code == 0, started.stdout
    assert stopped.exit_code == 0, stopped.stdout
    assert docker.containers["devboxctl"].status == "exited"
