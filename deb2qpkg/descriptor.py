#!/usr/bin/env python3
"""Package Descriptor model and its ``qpkg.cfg`` serialization."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Optional

from .config import (
    DEFAULT_AUTHOR,
    DEFAULT_LICENSE,
    DEFAULT_QTS_MIN,
    DEFAULT_RC_NUM,
    DEFAULT_RUN_AS_USER,
    DEFAULT_TARGET_ARCH,
    DEFAULT_TIMEOUT,
    DEFAULT_VERSION,
    parse_assignments,
    render_assignments,
)
from .utils import ValidationError

NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
CONTROL_CHAR_RE = re.compile(r"[\x00-\x1f\x7f]")

# Debian architecture -> QNAP build tag used in container file names.
QNAP_ARCH_TAGS = {
    "all": "x86_64",
    "amd64": "x86_64",
    "arm64": "arm_64",
    "armhf": "arm-x41",
    "i386": "x86",
}


@dataclass(frozen=True)
class PackageDescriptor:
    """Metadata needed to build and register one QPKG.

    Instances are immutable; use :meth:`with_overrides` to derive a changed
    copy before assembly starts.
    """

    name: str
    display_name: str = ""
    version: str = DEFAULT_VERSION
    summary: str = ""
    author: str = DEFAULT_AUTHOR
    license: str = DEFAULT_LICENSE
    service: bool = False
    service_port: Optional[int] = None
    service_args: str = ""
    run_as_user: str = DEFAULT_RUN_AS_USER
    webui_path: Optional[str] = None
    boot_order: int = DEFAULT_RC_NUM
    timeout: int = DEFAULT_TIMEOUT
    qts_min_version: str = DEFAULT_QTS_MIN
    architecture: str = DEFAULT_TARGET_ARCH
    extra_fields: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Package name is required")
        if not NAME_RE.match(self.name):
            raise ValidationError(
                f"Package name must be alphanumeric (plus - and _), got {self.name!r}"
            )
        if not self.display_name:
            object.__setattr__(self, "display_name", self.name)
        if not self.version:
            object.__setattr__(self, "version", DEFAULT_VERSION)
        # these end up in the footer or in single-line registry values
        for label, value in (
            ("Display name", self.display_name),
            ("Version", self.version),
            ("Web UI path", self.webui_path or ""),
        ):
            if CONTROL_CHAR_RE.search(value):
                raise ValidationError(f"{label} must be a single line of text: {value!r}")
        if self.service_port is not None and not 0 < self.service_port < 65536:
            raise ValidationError(f"Service port out of range: {self.service_port}")
        if self.boot_order < 0:
            raise ValidationError(f"Boot order number must be positive: {self.boot_order}")
        if self.webui_path is not None and not self.service:
            raise ValidationError("A web UI requires a service package")
        if self.run_as_user and not re.match(r"^[A-Za-z0-9_.][A-Za-z0-9_.-]*$", self.run_as_user):
            raise ValidationError(f"Invalid run-as user: {self.run_as_user!r}")

    @property
    def service_program(self) -> Optional[str]:
        return f"{self.name}.sh" if self.service else None

    @property
    def web_port(self) -> Optional[int]:
        if self.webui_path is None:
            return None
        return self.service_port

    @property
    def qnap_arch(self) -> str:
        return QNAP_ARCH_TAGS.get(self.architecture, self.architecture or "x86_64")

    def container_filename(self) -> str:
        return f"{self.name}_{self.version}_{self.qnap_arch}.qpkg"

    def with_overrides(self, **changes) -> "PackageDescriptor":
        """Return a copy with every non-None keyword applied."""
        applied = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **applied)

    def to_cfg_fields(self) -> dict[str, str]:
        """Serialize into ordered ``qpkg.cfg`` keys.

        Service and web UI keys are omitted entirely for packages without a
        service so the installer can apply host defaults.
        """
        cfg: dict[str, str] = {
            "QPKG_NAME": self.name,
            "QPKG_DISPLAY_NAME": self.display_name,
            "QPKG_SUMMARY": self.summary,
            "QPKG_VER": self.version,
            "QPKG_AUTHOR": self.author,
            "QPKG_LICENSE": self.license,
        }

        if self.service:
            cfg["QPKG_SERVICE_PROGRAM"] = self.service_program or ""
            if self.service_port is not None:
                cfg["QPKG_SERVICE_PORT"] = str(self.service_port)
            if self.service_args:
                cfg["QPKG_SERVICE_ARGS"] = self.service_args
            cfg["QPKG_RUN_AS"] = self.run_as_user
            cfg["QPKG_RC_NUM"] = str(self.boot_order)
            cfg["QPKG_TIMEOUT"] = str(self.timeout)

        if self.webui_path is not None:
            cfg["QPKG_WEBUI"] = self.webui_path
            if self.web_port is not None:
                cfg["QPKG_WEB_PORT"] = str(self.web_port)
            cfg["QPKG_USE_PROXY"] = "0"
            cfg["QPKG_DESKTOP_APP"] = "1"

        cfg["QTS_MINI_VERSION"] = self.qts_min_version
        cfg["QPKG_VOLUME_SELECT"] = "1"
        cfg["QPKG_ARCH"] = self.architecture
        cfg.update(self.extra_fields)
        return cfg

    def render_cfg(self, layout: Optional[dict[str, str]] = None) -> str:
        """Render ``qpkg.cfg`` text, optionally followed by container layout keys."""
        text = "# QPKG configuration - generated by deb2qpkg\n\n" + render_assignments(self.to_cfg_fields())
        if layout:
            text += "\n# Container layout\n" + render_assignments(layout)
        return text

    @classmethod
    def from_cfg_fields(cls, cfg: dict[str, str]) -> "PackageDescriptor":
        """Rebuild a descriptor from ``qpkg.cfg`` keys.

        Keys this model does not know are kept in ``extra_fields`` except
        the container layout record.
        """
        if "QPKG_NAME" not in cfg:
            raise ValidationError("qpkg.cfg has no QPKG_NAME")

        def optional_int(key: str) -> Optional[int]:
            raw = cfg.get(key, "").strip()
            if not raw:
                return None
            try:
                return int(raw)
            except ValueError as exc:
                raise ValidationError(f"{key} is not a number: {raw!r}") from exc

        service = "QPKG_SERVICE_PROGRAM" in cfg
        known = {
            "QPKG_NAME",
            "QPKG_DISPLAY_NAME",
            "QPKG_SUMMARY",
            "QPKG_VER",
            "QPKG_AUTHOR",
            "QPKG_LICENSE",
            "QPKG_SERVICE_PROGRAM",
            "QPKG_SERVICE_PORT",
            "QPKG_SERVICE_ARGS",
            "QPKG_RUN_AS",
            "QPKG_RC_NUM",
            "QPKG_TIMEOUT",
            "QPKG_WEBUI",
            "QPKG_WEB_PORT",
            "QPKG_USE_PROXY",
            "QPKG_DESKTOP_APP",
            "QTS_MINI_VERSION",
            "QPKG_VOLUME_SELECT",
            "QPKG_ARCH",
            "QPKG_DATA_LEN",
        }
        extra = {key: value for key, value in cfg.items() if key not in known}

        boot_order = optional_int("QPKG_RC_NUM")
        timeout = optional_int("QPKG_TIMEOUT")
        return cls(
            name=cfg["QPKG_NAME"],
            display_name=cfg.get("QPKG_DISPLAY_NAME", ""),
            version=cfg.get("QPKG_VER", DEFAULT_VERSION),
            summary=cfg.get("QPKG_SUMMARY", ""),
            author=cfg.get("QPKG_AUTHOR", DEFAULT_AUTHOR),
            license=cfg.get("QPKG_LICENSE", DEFAULT_LICENSE),
            service=service,
            service_port=optional_int("QPKG_SERVICE_PORT"),
            service_args=cfg.get("QPKG_SERVICE_ARGS", ""),
            run_as_user=cfg.get("QPKG_RUN_AS", DEFAULT_RUN_AS_USER),
            webui_path=cfg.get("QPKG_WEBUI"),
            boot_order=boot_order if boot_order is not None else DEFAULT_RC_NUM,
            timeout=timeout if timeout is not None else DEFAULT_TIMEOUT,
            qts_min_version=cfg.get("QTS_MINI_VERSION", DEFAULT_QTS_MIN),
            architecture=cfg.get("QPKG_ARCH", DEFAULT_TARGET_ARCH),
            extra_fields=extra,
        )

    @classmethod
    def parse_cfg(cls, text: str) -> "PackageDescriptor":
        return cls.from_cfg_fields(parse_assignments(text))

