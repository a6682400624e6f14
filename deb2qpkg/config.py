#!/usr/bin/env python3
"""Builder defaults and saved project files (``qpkg-builder.conf``)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .utils import ValidationError

DEFAULT_AUTHOR = "Anon"
DEFAULT_LICENSE = "MIT"
DEFAULT_VERSION = "1.0.0"
DEFAULT_QTS_MIN = "5.0.0"
DEFAULT_PORT = 8080
DEFAULT_RC_NUM = 150
DEFAULT_TIMEOUT = 60
DEFAULT_RUN_AS_USER = "root"
DEFAULT_TARGET_ARCH = "amd64"

LICENSE_CHOICES = ("MIT", "Apache", "GPLv2", "GPLv3", "Other")

PROJECT_CONFIG_NAME = "qpkg-builder.conf"

_ASSIGNMENT_RE = re.compile(r'^[ \t]*([A-Z][A-Z0-9_]*)="((?:[^"\\]|\\.)*)"[ \t]*$', re.MULTILINE | re.DOTALL)


def quote_value(value: str) -> str:
    """Escape a value for a ``KEY="value"`` line readable by ``/bin/sh``."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )
    return f'"{escaped}"'


def _unquote_value(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw)


def parse_assignments(text: str) -> dict[str, str]:
    """Parse shell-style ``KEY="value"`` assignments.

    A quoted value may span several lines, as ``/bin/sh`` allows. Comments,
    blanks and anything that is not a complete assignment are ignored.
    """
    return {match.group(1): _unquote_value(match.group(2)) for match in _ASSIGNMENT_RE.finditer(text)}


def render_assignments(values: dict[str, str]) -> str:
    return "".join(f"{key}={quote_value(value)}\n" for key, value in values.items())


@dataclass
class ProjectConfig:
    """A saved builder project that can be reloaded to rebuild a package.

    ``fields`` holds descriptor fields in ``qpkg.cfg`` form; the remaining
    attributes point at the inputs that are not part of the descriptor.
    """

    fields: dict[str, str]
    binary_path: Optional[Path] = None
    icon_path: Optional[Path] = None
    service_script: Optional[Path] = None
    binary_choice: Optional[str] = None

    def to_text(self) -> str:
        extra: dict[str, str] = {}
        if self.binary_path is not None:
            extra["BIN_PATH"] = str(self.binary_path)
        if self.icon_path is not None:
            extra["ICON_PATH"] = str(self.icon_path)
        if self.service_script is not None:
            extra["SERVICE_SCRIPT"] = str(self.service_script)
        if self.binary_choice:
            extra["BIN_SELECT"] = self.binary_choice
        return (
            "# deb2qpkg saved project - reload with: deb2qpkg build --config <file>\n"
            + render_assignments(self.fields)
            + render_assignments(extra)
        )


def save_project_config(path: Path, project: ProjectConfig) -> Path:
    """Write ``project`` to ``path``, creating parent directories."""
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(project.to_text(), encoding="utf-8")
    return path


def load_project_config(path: Path) -> ProjectConfig:
    """Load a project written by :func:`save_project_config`."""
    path = path.expanduser()
    if not path.is_file():
        raise ValidationError(f"Config file does not exist: {path}")

    values = parse_assignments(path.read_text(encoding="utf-8"))

    def optional_path(key: str) -> Optional[Path]:
        raw = values.pop(key, "")
        return Path(raw) if raw else None

    binary_path = optional_path("BIN_PATH")
    icon_path = optional_path("ICON_PATH")
    service_script = optional_path("SERVICE_SCRIPT")
    binary_choice = values.pop("BIN_SELECT", "") or None

    if "QPKG_NAME" not in values:
        raise ValidationError(f"Config file has no QPKG_NAME: {path}")

    return ProjectConfig(
        fields=values,
        binary_path=binary_path,
        icon_path=icon_path,
        service_script=service_script,
        binary_choice=binary_choice,
    )
