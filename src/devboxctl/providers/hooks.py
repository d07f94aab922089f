"""Run template hook scripts inside instance containers."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .docker import DockerError, DockerProvider

HOOK_TMP_PREFIX = "/tmp/devbox-hook-"  # noqa: S108 - path inside the container


class HookError(RuntimeError):
    """Raised when a hook cannot be executed at all."""


class HookMode(str, Enum):
    """Arguments understood by hook scripts."""

    ENABLE = "enable"
    DISABLE = "disable"
    STATUS = "status"
    RUN = "run"
    RESUME = "resume"


@dataclass(frozen=True, slots=True)
class HookResult:
    """Outcome of a single hook invocation."""

    script: str
    mode: str
    ok: bool
    returncode: int
    stdout: str = ""
    stderr: str = ""
    reason: str = ""

    @property
    def detail(self) -> str:
        """Short description suitable for step logging."""
        if self.ok:
            return f"{self.script} {self.mode}: ok"
        return f"{self.script} {self.mode}: {self.reason}"


@dataclass(slots=True)
class HookExecutor:
    """Copy a script into a running container and execute it as root."""

    docker: DockerProvider

    def temp_path(self, script_path: Path) -> str:
        """Return the in-container location used for *script_path*."""
        return f"{HOOK_TMP_PREFIX}{script_path.name}"

    def run(self, instance: str, script_path: Path, mode: HookMode | str) -> HookResult:
        """Execute *script_path* in *instance* with *mode* as its only argument.

        A non-zero exit status yields a failed :class:`HookResult`; it is never
        retried. The temporary copy is removed whatever the outcome.
        """
        mode_value = HookMode(mode).value
        script_path = Path(script_path)
        if not script_path.is_file():
            raise HookError(f"Hook script {script_path} does not exist.")

        target = self.temp_path(script_path)
        try:
            self.docker.copy_to(instance, script_path, target)
        except DockerError as exc:
            return HookResult(
                script=script_path.name,
                mode=mode_value,
                ok=False,
                returncode=-1,
                reason=f"copy into {instance} failed: {exc}",
            )

        try:
            self.docker.exec_command(instance, ["chmod", "0755", target])
            result = self.docker.exec_command(instance, [target, mode_value], check=False)
        except DockerError as exc:
            return HookResult(
                script=script_path.name,
                mode=mode_value,
                ok=False,
                returncode=-1,
                reason=str(exc),
            )
        finally:
            self.docker.exec_command(instance, ["rm", "-f", target], check=False)

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if result.returncode != 0:
            message = stderr.strip() or stdout.strip() or "no output"
            return HookResult(
                script=script_path.name,
                mode=mode_value,
                ok=False,
                returncode=result.returncode,
                stdout=stdout,
                stderr=stderr,
                reason=f"exit {result.returncode}: {message}",
            )
        return HookResult(
            script=script_path.name,
            mode=mode_value,
            ok=True,
            returncode=0,
            stdout=stdout,
            stderr=stderr,
        )


__all__ = ["HookError", "HookExecutor", "HookMode", "HookResult"]
