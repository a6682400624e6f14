#!/usr/bin/env python3
"""Host package registry (``qpkg.conf``): one INI section per package."""

from __future__ import annotations

import configparser
import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Mapping, Optional

from .utils import InstallError


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None, strict=False, delimiters=("=",))
    parser.optionxform = str  # keep Install_Path, RC_Number, ... as written
    return parser


class QpkgRegistry:
    """Read and atomically rewrite the host registry file."""

    def __init__(self, conf_path: Path, logger: Optional[logging.Logger] = None) -> None:
        self.conf_path = Path(conf_path)
        self.logger = logger or logging.getLogger("deb2qpkg.registry")

    def _load(self) -> configparser.ConfigParser:
        parser = _new_parser()
        if not self.conf_path.exists():
            return parser
        try:
            parser.read(self.conf_path, encoding="utf-8")
        except (OSError, configparser.Error) as exc:
            raise InstallError(f"Cannot read registry {self.conf_path}: {exc}") from exc
        return parser

    def _save(self, parser: configparser.ConfigParser) -> None:
        buffer = io.StringIO()
        parser.write(buffer, space_around_delimiters=True)

        try:
            self.conf_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(dir=self.conf_path.parent, prefix=".qpkg.conf.")
        except OSError as exc:
            raise InstallError(f"Cannot write registry {self.conf_path}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(buffer.getvalue())
            os.replace(temp_name, self.conf_path)
        except OSError as exc:
            Path(temp_name).unlink(missing_ok=True)
            raise InstallError(f"Cannot write registry {self.conf_path}: {exc}") from exc

    def sections(self) -> list[str]:
        return self._load().sections()

    def get(self, name: str) -> Optional[dict[str, str]]:
        """Return the fields registered for ``name`` or ``None``."""
        parser = self._load()
        if not parser.has_section(name):
            return None
        return dict(parser.items(name))

    def set_entry(self, name: str, fields: Mapping[str, str]) -> None:
        """Replace the whole section of ``name`` with ``fields``."""
        parser = self._load()
        if parser.has_section(name):
            parser.remove_section(name)
        parser.add_section(name)
        for key, value in fields.items():
            parser.set(name, key, str(value))
        self._save(parser)
        self.logger.debug("Registered %s in %s", name, self.conf_path)

    def remove(self, name: str) -> bool:
        parser = self._load()
        if not parser.remove_section(name):
            return False
        self._save(parser)
        return True
