#!/usr/bin/env python3
"""Extract a QPKG container and register it on a host.

This mirrors what the embedded ``qinstall.sh`` does on a NAS, so containers
can be verified and installed into an arbitrary host layout from Python.
"""

from __future__ import annotations

import configparser
import io
import logging
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .assembler import (
    CONTROL_ARCHIVE_NAME,
    CONTROL_BLOCK_SIZE,
    FOOTER_MAGIC,
    FOOTER_SIZE,
    LAYOUT_DATA_LEN_KEY,
    LENGTH_FIELD_OFFSET,
    Footer,
    read_length_field,
)
from .config import parse_assignments
from .descriptor import PackageDescriptor
from .hooks import DEFAULT_VOLUME, ICON_DIR, ICON_SUBDIR, QPKG_CONF, SMB_CONF, render_hook_invocation
from .registry import QpkgRegistry
from .utils import (
    Deb2QpkgError,
    InstallError,
    ValidationError,
    cleanup_dir,
    create_temp_dir,
    host_architecture,
    run_command,
    safe_extract_tar,
)

HEAD_READ_SIZE = 64
HOOK_SHELL = "/bin/sh"


@dataclass
class QpkgContainer:
    """Parsed view of a container file; block offsets come from L and D."""

    path: Path
    size: int
    preamble_length: int
    data_length: int
    footer: Footer
    control_members: dict[str, bytes]
    cfg_fields: dict[str, str]
    descriptor: PackageDescriptor

    @property
    def control_offset(self) -> int:
        return self.preamble_length

    @property
    def data_offset(self) -> int:
        return self.preamble_length + CONTROL_BLOCK_SIZE

    @classmethod
    def open(cls, path: Path) -> "QpkgContainer":
        """Read and validate every region of ``path``.

        Raises :class:`InstallError` for a truncated or corrupt container.
        """
        path = Path(path).expanduser()
        if not path.is_file():
            raise InstallError(f"Container does not exist: {path}")

        size = path.stat().st_size
        if size < LENGTH_FIELD_OFFSET + CONTROL_BLOCK_SIZE + FOOTER_SIZE:
            raise InstallError(f"Container is truncated ({size} bytes): {path.name}")

        with path.open("rb") as handle:
            try:
                preamble_length = read_length_field(handle.read(HEAD_READ_SIZE))
            except ValueError as exc:
                raise InstallError(f"Not a QPKG container: {exc}") from exc

            handle.seek(size - FOOTER_SIZE)
            footer = Footer.from_bytes(handle.read(FOOTER_SIZE))
            if footer.magic != FOOTER_MAGIC:
                raise InstallError(f"Bad footer magic {footer.magic!r} in {path.name}")

            handle.seek(preamble_length)
            control_block = handle.read(CONTROL_BLOCK_SIZE)

        if len(control_block) < CONTROL_BLOCK_SIZE:
            raise InstallError(f"Container is truncated inside the control block: {path.name}")

        control_members = _unpack_control_block(control_block)
        if "qpkg.cfg" not in control_members:
            raise InstallError("Control archive has no qpkg.cfg")
        cfg_fields = parse_assignments(control_members["qpkg.cfg"].decode("utf-8", errors="replace"))

        raw_length = cfg_fields.get(LAYOUT_DATA_LEN_KEY, "")
        if not raw_length.isdigit():
            raise InstallError(f"qpkg.cfg has no valid {LAYOUT_DATA_LEN_KEY}: {raw_length!r}")
        data_length = int(raw_length)

        expected = preamble_length + CONTROL_BLOCK_SIZE + data_length + FOOTER_SIZE
        if expected != size:
            raise InstallError(
                f"Container is truncated or corrupt: expected {expected} bytes, found {size}"
            )

        try:
            descriptor = PackageDescriptor.from_cfg_fields(cfg_fields)
        except ValidationError as exc:
            raise InstallError(f"Invalid qpkg.cfg: {exc.message}") from exc

        return cls(
            path=path,
            size=size,
            preamble_length=preamble_length,
            data_length=data_length,
            footer=footer,
            control_members=control_members,
            cfg_fields=cfg_fields,
            descriptor=descriptor,
        )

    def read_preamble(self) -> bytes:
        with self.path.open("rb") as handle:
            return handle.read(self.preamble_length)

    def read_data_block(self) -> bytes:
        with self.path.open("rb") as handle:
            handle.seek(self.data_offset)
            data = handle.read(self.data_length)
        if len(data) != self.data_length:
            raise InstallError(f"Container is truncated inside the data block: {self.path.name}")
        return data

    def extract_control(self, destination: Path) -> Path:
        """Write the control members (qpkg.cfg, hooks, installer) to ``destination``."""
        destination.mkdir(parents=True, exist_ok=True)
        for name, content in self.control_members.items():
            target = destination / name
            target.write_bytes(content)
            if name != "qpkg.cfg":
                target.chmod(0o755)
        return destination

    def extract_data(self, destination: Path, logger: Optional[logging.Logger] = None) -> Path:
        """Decompress the data block into ``destination``."""
        try:
            with tarfile.open(fileobj=io.BytesIO(self.read_data_block()), mode="r:gz") as tar:
                safe_extract_tar(tar, destination, logger, error_type=InstallError)
        except (OSError, tarfile.TarError) as exc:
            raise InstallError(f"Cannot unpack data block: {exc}") from exc
        return destination


def _unpack_control_block(block: bytes) -> dict[str, bytes]:
    """Unwrap the padded control block into ``{member name: content}``."""
    try:
        with tarfile.open(fileobj=io.BytesIO(block), mode="r:") as wrapper:
            member = wrapper.extractfile(CONTROL_ARCHIVE_NAME)
            if member is None:
                raise InstallError(f"{CONTROL_ARCHIVE_NAME} is not a regular file")
            control_archive = member.read()

        members: dict[str, bytes] = {}
        with tarfile.open(fileobj=io.BytesIO(control_archive), mode="r:gz") as tar:
            for info in tar.getmembers():
                if not info.isfile():
                    continue
                extracted = tar.extractfile(info)
                if extracted is None:
                    continue
                name = info.name[2:] if info.name.startswith("./") else info.name
                members[name] = extracted.read()
    except KeyError as exc:
        raise InstallError(f"Control block has no {CONTROL_ARCHIVE_NAME}") from exc
    except (OSError, tarfile.TarError) as exc:
        raise InstallError(f"Corrupt control block: {exc}") from exc
    return members


@dataclass
class HostLayout:
    """Host paths used during installation. Every path can be overridden."""

    conf_path: Path = Path(QPKG_CONF)
    smb_conf: Path = Path(SMB_CONF)
    volume: Optional[Path] = None
    icon_dir: Path = Path(ICON_DIR)

    def resolve_volume(self, logger: Optional[logging.Logger] = None) -> Path:
        """Return the data volume: explicit, else the parent of the Public share."""
        if self.volume is not None:
            return Path(self.volume)

        if self.smb_conf.is_file():
            parser = configparser.ConfigParser(interpolation=None, strict=False)
            try:
                parser.read(self.smb_conf, encoding="utf-8")
                public_path = parser.get("Public", "path", fallback="").strip()
            except configparser.Error as exc:
                if logger:
                    logger.warning("Cannot parse %s: %s", self.smb_conf, exc)
                public_path = ""
            if public_path:
                return Path(public_path).parent

        return Path(DEFAULT_VOLUME)

    def install_dir(self, name: str, logger: Optional[logging.Logger] = None) -> Path:
        return self.resolve_volume(logger) / ".qpkg" / name


@dataclass
class InstallResult:
    name: str
    install_path: Path
    registry_fields: dict[str, str]
    descriptor: PackageDescriptor
    warnings: list[str] = field(default_factory=list)


def registry_fields(descriptor: PackageDescriptor, install_path: Path) -> dict[str, str]:
    """Registry fields for a package; absent descriptor keys stay absent."""
    fields = {
        "Name": descriptor.name,
        "Install_Path": str(install_path),
        "Enable": "TRUE",
        "Display_Name": descriptor.display_name,
        "Version": descriptor.version,
    }
    if descriptor.service_program:
        fields["Shell"] = str(install_path / descriptor.service_program)
    if descriptor.service_port is not None:
        fields["Service_Port"] = str(descriptor.service_port)
    if descriptor.service:
        fields["RC_Number"] = str(descriptor.boot_order)
    if descriptor.webui_path is not None:
        fields["Web_URL"] = descriptor.webui_path
    if descriptor.web_port is not None:
        fields["Web_Port"] = str(descriptor.web_port)
    return fields


class QpkgInstaller:
    """Install a container into a :class:`HostLayout`."""

    def __init__(
        self,
        layout: Optional[HostLayout] = None,
        logger: Optional[logging.Logger] = None,
        host_arch: Optional[str] = None,
    ) -> None:
        self.layout = layout or HostLayout()
        self.logger = logger or logging.getLogger("deb2qpkg.runtime")
        self.host_arch = host_arch or host_architecture()

    def _emit(self, log_callback, message: str) -> None:
        self.logger.info(message)
        if log_callback:
            log_callback(message)

    def check_architecture(self, descriptor: PackageDescriptor, force: bool = False) -> Optional[str]:
        """Fail on an architecture mismatch unless ``force``; return a warning if forced."""
        arch = descriptor.architecture
        if not arch or arch == "all" or arch == self.host_arch:
            return None
        message = f"Package is built for {arch} but this host is {self.host_arch}"
        if not force:
            raise InstallError(message)
        return message

    def install(self, container_path: Path, force: bool = False, log_callback=None) -> InstallResult:
        """Extract ``container_path`` and register it.

        Any failure before registration completes leaves the registry and
        a prior install untouched.
        """
        container = QpkgContainer.open(container_path)
        descriptor = container.descriptor
        warnings: list[str] = []

        arch_warning = self.check_architecture(descriptor, force)
        if arch_warning:
            self.logger.warning(arch_warning)
            warnings.append(arch_warning)

        install_dir = self.layout.install_dir(descriptor.name, self.logger)
        env = {
            "QPKG_NAME": descriptor.name,
            "QPKG_ROOT": str(install_dir),
            "QPKG_CONF": str(self.layout.conf_path),
        }
        self._emit(log_callback, f"Installing {descriptor.display_name} {descriptor.version} to {install_dir}")

        workspace = create_temp_dir("deb2qpkg-install-")
        try:
            container.extract_control(workspace)
            staged = container.extract_data(workspace / "data", self.logger)

            if self._run_hook("pre_install", workspace, env, log_callback) != 0:
                raise InstallError("pre_install hook failed")

            backup = self._swap_in(staged, install_dir)
            try:
                if self._run_hook("install", workspace, env, log_callback) != 0:
                    raise InstallError("install hook failed")
                fields = registry_fields(descriptor, install_dir)
                QpkgRegistry(self.layout.conf_path, self.logger).set_entry(descriptor.name, fields)
            except Deb2QpkgError:
                self._rollback(install_dir, backup)
                raise
            cleanup_dir(backup, self.logger)
            self._emit(log_callback, f"Registered {descriptor.name} in {self.layout.conf_path}")

            warnings.extend(self._copy_icons(install_dir))

            if self._run_hook("post_install", workspace, env, log_callback) != 0:
                message = "post_install hook returned non-zero"
                self.logger.warning(message)
                warnings.append(message)
        finally:
            cleanup_dir(workspace, self.logger)

        self._emit(log_callback, f"{descriptor.name} installed to {install_dir}")
        return InstallResult(
            name=descriptor.name,
            install_path=install_dir,
            registry_fields=fields,
            descriptor=descriptor,
            warnings=warnings,
        )

    def _run_hook(self, hook: str, workspace: Path, env: dict[str, str], log_callback=None) -> int:
        try:
            returncode, _ = run_command(
                [HOOK_SHELL, "-c", render_hook_invocation(hook)],
                self.logger,
                cwd=workspace,
                env=env,
                log_callback=log_callback,
                check=False,
            )
        except OSError as exc:
            raise InstallError(f"Cannot run {hook} hook: {exc}") from exc
        self.logger.debug("%s hook exited with %d", hook, returncode)
        return returncode

    def _swap_in(self, staged: Path, install_dir: Path) -> Optional[Path]:
        """Build ``<dir>.incoming`` from the prior install plus payload, then swap it in.

        Returns the moved-aside prior install, or None for a fresh install.
        """
        incoming = install_dir.with_name(install_dir.name + ".incoming")
        backup = install_dir.with_name(install_dir.name + ".previous")
        cleanup_dir(incoming, self.logger)
        cleanup_dir(backup, self.logger)

        try:
            install_dir.parent.mkdir(parents=True, exist_ok=True)
            if install_dir.exists():
                shutil.copytree(install_dir, incoming, symlinks=True)
            shutil.copytree(staged, incoming, symlinks=True, dirs_exist_ok=True)
            if install_dir.exists():
                install_dir.rename(backup)
            incoming.rename(install_dir)
        except OSError as exc:
            cleanup_dir(incoming, self.logger)
            if backup.exists() and not install_dir.exists():
                backup.rename(install_dir)
            raise InstallError(f"Payload copy into {install_dir} failed: {exc}") from exc

        return backup if backup.exists() else None

    def _rollback(self, install_dir: Path, backup: Optional[Path]) -> None:
        self.logger.warning("Rolling back %s", install_dir)
        cleanup_dir(install_dir, self.logger)
        if backup is not None:
            backup.rename(install_dir)

    def _copy_icons(self, install_dir: Path) -> list[str]:
        source = install_dir / ICON_SUBDIR
        if not source.is_dir():
            return []
        try:
            self.layout.icon_dir.mkdir(parents=True, exist_ok=True)
            for icon in sorted(source.iterdir()):
                if icon.is_file():
                    shutil.copyfile(icon, self.layout.icon_dir / icon.name)
        except OSError as exc:
            message = f"Cannot copy icons to {self.layout.icon_dir}: {exc}"
            self.logger.warning(message)
            return [message]
        return []

