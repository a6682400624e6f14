#!/usr/bin/env python3
"""Unpack foreign .deb/.tar.gz packages and discover the executables inside."""

from __future__ import annotations

import logging
import os
import re
import tarfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

from .config import DEFAULT_TARGET_ARCH
from .descriptor import PackageDescriptor
from .utils import (
    AmbiguousExecutableError,
    CommandExecutionError,
    ResolutionError,
    ValidationError,
    cleanup_dir,
    command_exists,
    create_temp_dir,
    run_command,
    safe_extract_tar,
    sanitize_package_name,
    strip_email,
)

PACKAGE_SUFFIXES = ((".deb", "deb"), (".tar.gz", "tarball"), (".tgz", "tarball"))
TARBALL_SUFFIX_RE = re.compile(r"\.(tar\.gz|tgz)$", re.IGNORECASE)
AR_MAGIC = b"!<arch>\n"
AR_HEADER_SIZE = 60

SHARED_LIBRARY_RE = re.compile(r"\.so(\.[^/]*)?$")
SHARE_PREFIXES = ("usr/share/", "usr/local/share/")
LIBRARY_PREFIXES = (
    "lib/",
    "lib32/",
    "lib64/",
    "usr/lib/",
    "usr/lib32/",
    "usr/lib64/",
    "usr/local/lib/",
)
MAX_LISTED_CANDIDATES = 10

TARBALL_ARCH_MARKERS = (
    (("x86_64", "amd64", "x64"), "amd64"),
    (("aarch64", "arm64"), "arm64"),
    (("armhf", "armv7"), "armhf"),
    (("i386", "i686"), "i386"),
)


@dataclass
class ForeignMetadata:
    """Metadata parsed from a foreign package; only seeds descriptor defaults."""

    package: str
    version: str
    architecture: str
    description: str
    maintainer: str
    source_path: Path
    source_format: str

    @property
    def summary(self) -> str:
        return self.description.splitlines()[0].strip() if self.description else ""


@dataclass
class ResolvedPackage:
    """Extracted file tree, metadata and executable candidates of a package."""

    metadata: ForeignMetadata
    root: Path
    candidates: tuple[str, ...]
    temp_dir: Path
    used_dpkg_deb: bool = False
    warnings: list[str] = field(default_factory=list)

    def path_of(self, candidate: str) -> Path:
        return self.root / candidate


class ForeignPackageResolver:
    """Extract foreign archives and locate candidate executables."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        target_arch: str = DEFAULT_TARGET_ARCH,
    ) -> None:
        self.logger = logger or logging.getLogger("deb2qpkg.resolver")
        self.target_arch = target_arch

    @staticmethod
    def package_format(input_path: Path) -> Optional[str]:
        """Return ``"deb"`` or ``"tarball"`` by file name, or None for anything else."""
        lowered = input_path.name.lower()
        for suffix, kind in PACKAGE_SUFFIXES:
            if lowered.endswith(suffix):
                return kind
        return None

    def is_foreign_package(self, input_path: Path) -> bool:
        return self.package_format(input_path) is not None

    def validate_input_file(self, input_path: Path) -> str:
        """Check that ``input_path`` is a readable .deb or tarball and return its kind."""
        if not input_path.is_file():
            raise ValidationError(f"File does not exist: {input_path}")

        kind = self.package_format(input_path)
        if kind is None:
            raise ValidationError("Supported packages are: " + ", ".join(s for s, _ in PACKAGE_SUFFIXES))

        if kind == "deb":
            with input_path.open("rb") as handle:
                if handle.read(len(AR_MAGIC)) != AR_MAGIC:
                    raise ResolutionError("Invalid .deb archive (missing ar header)")
        elif not tarfile.is_tarfile(str(input_path)):
            raise ResolutionError("Invalid tarball archive")
        return kind

    def inspect_metadata(self, input_path: Path, log_callback=None) -> ForeignMetadata:
        """Extract metadata only, without unpacking the payload."""
        input_path = input_path.expanduser().resolve()
        input_format = self.validate_input_file(input_path)

        if input_format == "tarball":
            return self._parse_tarball_metadata(input_path)

        temp_dir = create_temp_dir()
        try:
            members = self._split_ar_members(input_path, temp_dir)
            control_archive = self._find_member(members, "control.tar")
            control_text = None
            if control_archive is not None:
                control_dir = temp_dir / "control"
                with self._open_tar_archive(control_archive, temp_dir) as tar:
                    safe_extract_tar(tar, control_dir, self.logger)
                control_text = self._read_control_text(control_dir)
            return self.parse_control_metadata(control_text or "", input_path)
        except (OSError, tarfile.TarError) as exc:
            raise ResolutionError(f"Failed to read metadata from {input_path.name}: {exc}") from exc
        finally:
            cleanup_dir(temp_dir, self.logger)

    def resolve(
        self,
        input_path: Path,
        prefer_dpkg_deb: bool = True,
        log_callback=None,
    ) -> ResolvedPackage:
        """Unpack ``input_path`` and list the executables it ships.

        The caller owns the returned workspace and must call
        :meth:`cleanup_workspace` once the chosen payload has been staged.
        """
        input_path = input_path.expanduser().resolve()
        input_format = self.validate_input_file(input_path)

        temp_dir = create_temp_dir()
        try:
            if input_format == "tarball":
                metadata = self._parse_tarball_metadata(input_path)
                root = self._extract_tarball(input_path, temp_dir, log_callback)
                used_dpkg_deb = False
            else:
                data_dir = temp_dir / "data"
                control_dir = temp_dir / "control"
                used_dpkg_deb = self._extract_deb(
                    input_path, data_dir, control_dir, temp_dir, prefer_dpkg_deb, log_callback
                )
                control_text = self._read_control_text(control_dir)
                if control_text is None:
                    self.logger.warning("No control file found in %s", input_path.name)
                metadata = self.parse_control_metadata(control_text or "", input_path)
                root = data_dir

            candidates = discover_executables(root)
            self.logger.info("Found %d candidate executable(s) in %s", len(candidates), input_path.name)
            if log_callback:
                log_callback(f"Found {len(candidates)} candidate executable(s)")

            resolved = ResolvedPackage(
                metadata=metadata,
                root=root,
                candidates=candidates,
                temp_dir=temp_dir,
                used_dpkg_deb=used_dpkg_deb,
            )
            for warning in self.architecture_warnings(metadata):
                self.logger.warning(warning)
                if log_callback:
                    log_callback(f"WARNING: {warning}")
                resolved.warnings.append(warning)
            return resolved
        except Exception:
            cleanup_dir(temp_dir, self.logger)
            raise

    def cleanup_workspace(self, workspace: Path) -> None:
        """Cleanup resolution workspace."""
        cleanup_dir(workspace, self.logger)

    def architecture_warnings(self, metadata: ForeignMetadata) -> list[str]:
        arch = metadata.architecture
        if not arch or arch == "all" or arch == self.target_arch:
            return []
        return [
            f"Package is built for '{arch}' but the target host needs '{self.target_arch}'"
        ]

    def _extract_deb(
        self,
        deb_path: Path,
        data_dir: Path,
        control_dir: Path,
        temp_dir: Path,
        prefer_dpkg_deb: bool,
        log_callback=None,
    ) -> bool:
        """Extract a .deb with dpkg-deb when present, else split it by hand.

        Returns True when dpkg-deb produced the tree.
        """
        if prefer_dpkg_deb and command_exists("dpkg-deb"):
            try:
                self._extract_with_dpkg_deb(deb_path, data_dir, control_dir, log_callback)
                self.logger.info("Extracted with dpkg-deb: %s", deb_path.name)
                return True
            except CommandExecutionError as exc:
                self.logger.warning("dpkg-deb extraction failed, falling back: %s", exc)
                if log_callback:
                    log_callback("dpkg-deb extraction failed. Falling back to manual extraction.")
                cleanup_dir(data_dir, self.logger)
                cleanup_dir(control_dir, self.logger)

        try:
            self._extract_deb_manually(deb_path, data_dir, control_dir, temp_dir, log_callback)
        except (OSError, tarfile.TarError) as exc:
            raise ResolutionError(f"Failed to extract {deb_path.name}: {exc}") from exc
        return False

    def _extract_with_dpkg_deb(
        self,
        deb_path: Path,
        data_dir: Path,
        control_dir: Path,
        log_callback=None,
    ) -> None:
        data_dir.mkdir(parents=True, exist_ok=True)
        control_dir.mkdir(parents=True, exist_ok=True)
        run_command(["dpkg-deb", "-x", str(deb_path), str(data_dir)], self.logger, log_callback=log_callback)
        run_command(["dpkg-deb", "-e", str(deb_path), str(control_dir)], self.logger, log_callback=log_callback)

    def _extract_deb_manually(
        self,
        deb_path: Path,
        data_dir: Path,
        control_dir: Path,
        temp_dir: Path,
        log_callback=None,
    ) -> None:
        """Manual fallback: split ar members and unpack each tar payload."""
        if log_callback:
            log_callback("Extracting .deb members manually")

        members_dir = temp_dir / "members"
        members = self._split_ar_members(deb_path, members_dir)

        data_archive = self._find_member(members, "data.tar")
        if data_archive is None:
            raise ResolutionError(".deb is missing its data.tar archive")

        with self._open_tar_archive(data_archive, temp_dir) as tar:
            safe_extract_tar(tar, data_dir, self.logger)

        control_archive = self._find_member(members, "control.tar")
        if control_archive is not None:
            with self._open_tar_archive(control_archive, temp_dir) as tar:
                safe_extract_tar(tar, control_dir, self.logger)
        else:
            control_dir.mkdir(parents=True, exist_ok=True)

    def _find_member(self, members: dict[str, Path], prefix: str) -> Optional[Path]:
        return next((path for name, path in sorted(members.items()) if name.startswith(prefix)), None)

    def _split_ar_members(self, deb_path: Path, destination: Path) -> dict[str, Path]:
        """Write each member of an ``ar`` archive to ``destination``."""
        destination.mkdir(parents=True, exist_ok=True)
        members: dict[str, Path] = {}

        with deb_path.open("rb") as handle:
            if handle.read(len(AR_MAGIC)) != AR_MAGIC:
                raise ResolutionError("Invalid .deb archive (missing ar header)")

            while True:
                header = handle.read(AR_HEADER_SIZE)
                if not header:
                    break
                if len(header) < AR_HEADER_SIZE or header[58:60] != b"`\n":
                    raise ResolutionError(f"Corrupt ar member header in {deb_path.name}")

                name = header[:16].decode("ascii", errors="replace").strip()
                if name.endswith("/") and name not in {"/", "//"}:
                    name = name[:-1]
                try:
                    size = int(header[48:58].decode("ascii").strip())
                except ValueError as exc:
                    raise ResolutionError(f"Corrupt ar member size in {deb_path.name}") from exc

                data = handle.read(size)
                if len(data) < size:
                    raise ResolutionError(f"Truncated ar member {name!r} in {deb_path.name}")
                if size % 2:
                    handle.read(1)

                if not name or "/" in name:
                    continue
                target = destination / name
                target.write_bytes(data)
                members[name] = target

        return members

    @contextmanager
    def _open_tar_archive(self, archive_path: Path, temp_dir: Path):
        """Open a member archive; zstd members go through the ``zstd`` CLI first."""
        source = archive_path
        if archive_path.suffix == ".zst":
            source = self._decompress_zstd(archive_path, temp_dir)
        try:
            with tarfile.open(source, mode="r:*") as tar:
                yield tar
        except tarfile.ReadError as exc:
            raise ResolutionError(f"Unsupported tar format: {archive_path.name}") from exc
        finally:
            if source != archive_path:
                source.unlink(missing_ok=True)

    def _decompress_zstd(self, archive_path: Path, temp_dir: Path) -> Path:
        if not command_exists("zstd"):
            raise ResolutionError("zstd is required to process .tar.zst archives")
        target = temp_dir / archive_path.with_suffix("").name
        try:
            run_command(["zstd", "-d", "-f", "-q", str(archive_path), "-o", str(target)], self.logger)
        except CommandExecutionError as exc:
            raise ResolutionError(f"zstd failed on {archive_path.name}: {exc}") from exc
        return target

    def _read_control_text(self, control_dir: Path) -> Optional[str]:
        control_file = control_dir / "control"
        if not control_file.is_file():
            return None
        return control_file.read_text(encoding="utf-8", errors="replace")

    def parse_control_metadata(self, control_text: str, source_path: Path) -> ForeignMetadata:
        """Read the fields used for descriptor defaults from a control stanza.

        Field names are case-insensitive; indented lines continue the previous
        field and are joined with newlines.
        """
        fields: dict[str, str] = {}
        key: Optional[str] = None
        for line in control_text.splitlines():
            if line[:1].isspace():
                if key is not None and line.strip():
                    fields[key] = "\n".join(filter(None, (fields[key], line.strip())))
                continue
            name, sep, value = line.partition(":")
            key = name.strip().lower() if sep else None
            if key is not None:
                fields[key] = value.strip()

        return ForeignMetadata(
            package=fields.get("package", ""),
            version=fields.get("version", ""),
            architecture=fields.get("architecture", "").lower(),
            description=fields.get("description", ""),
            maintainer=fields.get("maintainer", ""),
            source_path=source_path,
            source_format="deb",
        )

    def _parse_tarball_metadata(self, source_path: Path) -> ForeignMetadata:
        """Guess name, version and architecture from ``name-1.2-linux-x86_64.tar.gz``.

        The first token holding a digit starts the version.
        """
        stem = TARBALL_SUFFIX_RE.sub("", source_path.name)
        tokens = [token for token in re.split(r"[-_]+", stem) if token]
        split = next((index for index, token in enumerate(tokens) if re.search(r"\d", token)), len(tokens))
        lowered = stem.lower()

        return ForeignMetadata(
            package="-".join(tokens[:split]) or stem,
            version="-".join(tokens[split:]),
            architecture=next(
                (arch for markers, arch in TARBALL_ARCH_MARKERS if any(marker in lowered for marker in markers)),
                "",
            ),
            description=f"Repackaged application from {source_path.name}",
            maintainer="",
            source_path=source_path,
            source_format="tarball",
        )

    def _extract_tarball(self, tarball_path: Path, temp_dir: Path, log_callback=None) -> Path:
        """Unpack an application tarball; a lone top-level directory becomes the root."""
        if log_callback:
            log_callback("Extracting tarball")

        payload_dir = temp_dir / "payload"
        try:
            with self._open_tar_archive(tarball_path, temp_dir) as tar:
                safe_extract_tar(tar, payload_dir, self.logger)
        except tarfile.TarError as exc:
            raise ResolutionError(f"Failed to extract tarball archive: {exc}") from exc

        entries = list(payload_dir.iterdir())
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return payload_dir


def is_excluded_path(relative_path: str) -> bool:
    """Return True for shared libraries, share/doc trees and library trees.

    Library trees stay eligible below a ``bin`` segment so bundled runtimes
    that ship their own launcher are still found.
    """
    name = relative_path.rsplit("/", 1)[-1]
    if SHARED_LIBRARY_RE.search(name):
        return True
    if relative_path.startswith(SHARE_PREFIXES):
        return True
    for prefix in LIBRARY_PREFIXES:
        if relative_path.startswith(prefix):
            return "bin" not in relative_path[len(prefix):].split("/")[:-1]
    return False


def discover_executables(root: Path) -> tuple[str, ...]:
    """List regular files under ``root`` with any execute bit set.

    Permission bits are checked instead of ``os.access`` because payloads
    are often built for another architecture than the resolving host.
    """
    found: set[str] = set()
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = Path(dirpath) / filename
            if path.is_symlink() or not path.is_file():
                continue
            if not path.stat().st_mode & 0o111:
                continue
            relative = path.relative_to(root).as_posix()
            if is_excluded_path(relative):
                continue
            found.add(relative)
    return tuple(sorted(found))


def preselected_executable(candidates: Sequence[str]) -> Optional[str]:
    """Return the candidate a front end may preselect, or None when the user must choose."""
    return candidates[0] if len(candidates) == 1 else None


def select_executable(
    candidates: Sequence[str],
    choice: Union[str, int, None] = None,
    logger: Optional[logging.Logger] = None,
    log_callback=None,
) -> str:
    """Pick the payload executable among ``candidates``.

    ``choice`` may be a path from the full candidate set or a 1-based
    index into it.  Without a choice a single candidate is auto-selected
    and several candidates raise :class:`AmbiguousExecutableError`.
    """
    logger = logger or logging.getLogger("deb2qpkg.resolver")
    if not candidates:
        raise ResolutionError(
            "No usable executable found; the package may contain only libraries or data files"
        )

    if choice is None:
        if len(candidates) > 1:
            raise AmbiguousExecutableError(tuple(candidates))
        selected = candidates[0]
        logger.info("Found executable: %s", selected)
        if log_callback:
            log_callback(f"Found executable: {selected}")
        return selected

    if isinstance(choice, int) or (isinstance(choice, str) and choice.isdigit()):
        index = int(choice)
        if not 1 <= index <= len(candidates):
            raise ResolutionError(f"Executable number out of range: {index}")
        selected = candidates[index - 1]
    else:
        normalized = choice.strip().lstrip("/")
        if normalized.startswith("./"):
            normalized = normalized[2:]
        if normalized not in candidates:
            raise ResolutionError(f"Not a candidate executable: {choice}")
        selected = normalized

    logger.info("Selected executable: %s", selected)
    if log_callback:
        log_callback(f"Selected executable: {selected}")
    return selected


def descriptor_from_metadata(metadata: ForeignMetadata, **overrides) -> PackageDescriptor:
    """Build a descriptor seeded from foreign metadata.

    Metadata fields that are absent leave the descriptor defaults alone;
    explicit ``overrides`` that are not None always win.
    """
    values: dict[str, object] = {}
    if metadata.package:
        values["name"] = sanitize_package_name(metadata.package)
        values["display_name"] = metadata.package
    if metadata.version:
        values["version"] = metadata.version
    if metadata.summary:
        values["summary"] = metadata.summary
    if metadata.maintainer:
        values["author"] = strip_email(metadata.maintainer)
    if metadata.architecture:
        values["architecture"] = metadata.architecture

    values.update({key: value for key, value in overrides.items() if value is not None})
    if not values.get("name"):
        raise ValidationError("Package name is required (no Package field in metadata)")
    return PackageDescriptor(**values)
