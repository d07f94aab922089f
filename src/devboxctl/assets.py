"""Locate per-template build assets and hook scripts.

A template is a directory ``<templates_dir>/<template>/`` containing::

    Dockerfile     required to build the template image
    harden.sh      optional hardening hook (enable/disable/status/resume)
    firstboot.sh   optional hook run once in ``run`` mode after creation

The content of these files is owned by the operator; devboxctl only relies on
their presence and on the hook argument contract.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

DOCKERFILE_NAME = "Dockerfile"
HARDEN_HOOK_NAME = "harden.sh"
FIRSTBOOT_HOOK_NAME = "firstboot.sh"

_TEMPLATE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")
_EXPOSE_22 = re.compile(r"^\s*EXPOSE\s+22\b", re.IGNORECASE | re.MULTILINE)


class TemplateAssetError(RuntimeError):
    """Raised when a template or one of its required assets is missing."""


def validate_template_name(name: str) -> str:
    """Validate a template identifier."""
    normalised = name.strip()
    if not _TEMPLATE_PATTERN.fullmatch(normalised):
        raise ValueError(
            f"Invalid template name {name!r}: must match [a-z0-9][a-z0-9_.-]*."
        )
    return normalised


def check_dockerfile(content: str) -> list[str]:
    """Return compatibility issues found in a Dockerfile body."""
    issues: list[str] = []
    lowered = content.lower()
    if not _EXPOSE_22.search(content):
        issues.append("No `EXPOSE 22` found; instances are expected to serve SSH on port 22.")
    if "sshd" not in lowered:
        issues.append("No sshd reference found; make sure the image starts an SSH daemon.")
    if "useradd" not in lowered and "adduser" not in lowered:
        issues.append("No useradd/adduser step found; the login user may not exist.")
    return issues


@dataclass(frozen=True)
class TemplateAssets:
    """Resolve asset paths under ``root``."""

    root: Path

    def template_dir(self, template: str) -> Path:
        """Return the directory holding *template*."""
        return self.root / validate_template_name(template)

    def dockerfile(self, template: str) -> Path:
        """Return the Dockerfile for *template*, raising when it is missing."""
        path = self.template_dir(template) / DOCKERFILE_NAME
        if not path.is_file():
            raise TemplateAssetError(f"Template '{template}' has no Dockerfile at {path}.")
        return path

    def harden_hook(self, template: str) -> Path:
        """Return the hardening hook for *template*, raising when it is missing."""
        path = self.template_dir(template) / HARDEN_HOOK_NAME
        if not path.is_file():
            raise TemplateAssetError(f"Template '{template}' has no hardening hook at {path}.")
        return path

    def firstboot_hook(self, template: str) -> Path | None:
        """Return the optional first-boot hook for *template*."""
        path = self.template_dir(template) / FIRSTBOOT_HOOK_NAME
        return path if path.is_file() else None

    def check(self, template: str) -> list[str]:
        """Return Dockerfile compatibility warnings for *template*."""
        return check_dockerfile(self.dockerfile(template).read_text(encoding="utf-8"))

    def list_templates(self) -> list[str]:
        """Return every template directory that ships a Dockerfile."""
        if not self.root.is_dir():
            return []
        return sorted(
            path.name
            for path in self.root.iterdir()
            if path.is_dir() and (path / DOCKERFILE_NAME).is_file()
        )


__all__ = [
    "TemplateAssetError",
    "TemplateAssets",
    "check_dockerfile",
    "validate_template_name",
]
