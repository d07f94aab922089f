"""Jinja2 template rendering for files devboxctl generates.

Built-in templates live next to this module. Operators can shadow any of them
by placing a file with the same relative path under ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


class TemplateEngine:
    """Render templates with strict undefined handling."""

    def __init__(self, search_paths: list[Path]) -> None:
        self.search_paths = list(search_paths)
        loaders = [FileSystemLoader(str(path)) for path in self.search_paths]
        self._env = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose override directory shadows the built-ins."""
        paths: list[Path] = []
        if override_dir is not None and Path(override_dir).is_dir():
            paths.append(Path(override_dir))
        paths.append(BUILTIN_TEMPLATES_DIR)
        return cls(paths)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self._env.get_template(name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination*; return ``False`` when content is unchanged."""
        rendered = self.render_to_string(name, context)
        destination = Path(destination)
        if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
            os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return True


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine"]
