#!/usr/bin/env python3
"""Assemble a self-installing QPKG container.

Container layout::

    [0, L)                 shell preamble that extracts the blocks below
    [L, L+20480)           control block: tar of control.tar.gz, zero padded
    [L+20480, L+20480+D)   data block: data.tar.gz of the staged payload
    [.., +100)             footer: timestamp, display name, version, magic

The preamble stores its own length L in a fixed-width field at byte 21 so
the block boundaries can be recomputed without scanning.
"""

from __future__ import annotations

import gzip
import io
import logging
import os
import shlex
import shutil
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Mapping, Optional

from .descriptor import PackageDescriptor
from .hooks import ICON_SUBDIR, render_package_routines, render_qinstall
from .icons import stage_icons
from .utils import AssemblyError, cleanup_dir, create_temp_dir

CONTROL_BLOCK_SIZE = 20480
FOOTER_SIZE = 100
FOOTER_MAGIC = "QNAPQPKG"
# (name, width) in on-disk order; the two leading fields are reserved.
FOOTER_FIELDS = (
    ("reserved", 10),
    ("reserved_ext", 40),
    ("timestamp", 10),
    ("display_name", 20),
    ("version", 10),
    ("magic", 10),
)
LENGTH_FIELD_PREFIX = b"#!/bin/sh\nscript_len="
LENGTH_FIELD_OFFSET = len(LENGTH_FIELD_PREFIX)
LENGTH_FIELD_WIDTH = 5

DATA_ARCHIVE_NAME = "data.tar.gz"
CONTROL_ARCHIVE_NAME = "control.tar.gz"
LAYOUT_DATA_LEN_KEY = "QPKG_DATA_LEN"

PREAMBLE_TEMPLATE = """#!/bin/sh
script_len={script_len}
# QPKG package installer generated by deb2qpkg
# preamble | control block ({control_len} bytes) | data block | 100-byte footer
echo {banner}
script_len=$(expr "$script_len" + 0)
control_len={control_len}
data_len={data_len}

EXTRACT_DIR=$(mktemp -d /tmp/qpkg-install.XXXXXX) || exit 1
trap 'rm -rf "$EXTRACT_DIR"' EXIT
mkdir -p "$EXTRACT_DIR/data"

if ! tail -c +$(expr $script_len + 1) "$0" | head -c $control_len | tar xf - -C "$EXTRACT_DIR"; then
    echo "ERROR: cannot read control block" >&2
    exit 1
fi
if ! (cd "$EXTRACT_DIR" && tar xzf {control_archive}); then
    echo "ERROR: cannot unpack {control_archive}" >&2
    exit 1
fi
if ! tail -c +$(expr $script_len + $control_len + 1) "$0" | head -c $data_len | tar xzf - -C "$EXTRACT_DIR/data"; then
    echo "ERROR: cannot unpack data block" >&2
    exit 1
fi

cd "$EXTRACT_DIR" || exit 1
/bin/sh ./qinstall.sh
status=$?
[ $status -eq 0 ] && echo "Done."
exit $status
"""


@dataclass(frozen=True)
class Footer:
    """The fixed 100-byte record closing every container."""

    timestamp: int
    display_name: str
    version: str
    magic: str = FOOTER_MAGIC

    def to_bytes(self) -> bytes:
        values = {
            "reserved": "",
            "reserved_ext": "",
            "timestamp": str(self.timestamp),
            "display_name": self.display_name,
            "version": self.version,
            "magic": self.magic,
        }
        encoded = b"".join(
            values[name].encode("utf-8")[:width].ljust(width, b" ") for name, width in FOOTER_FIELDS
        )
        if len(encoded) != FOOTER_SIZE:
            raise AssemblyError(f"Footer is {len(encoded)} bytes, expected {FOOTER_SIZE}")
        return encoded

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Footer":
        if len(raw) != FOOTER_SIZE:
            raise ValueError(f"Footer must be {FOOTER_SIZE} bytes, got {len(raw)}")
        values: dict[str, str] = {}
        offset = 0
        for name, width in FOOTER_FIELDS:
            values[name] = raw[offset:offset + width].decode("utf-8", errors="replace").rstrip(" ")
            offset += width
        timestamp = int(values["timestamp"]) if values["timestamp"].isdigit() else 0
        return cls(
            timestamp=timestamp,
            display_name=values["display_name"],
            version=values["version"],
            magic=values["magic"],
        )


def footer_field_span(name: str) -> tuple[int, int]:
    """Byte span of a footer field, relative to the start of the footer."""
    offset = 0
    for field_name, width in FOOTER_FIELDS:
        if field_name == name:
            return offset, offset + width
        offset += width
    raise KeyError(name)


@dataclass(frozen=True)
class PreambleFields:
    """Typed inputs of the preamble template apart from its own length."""

    display_name: str
    version: str
    data_length: int
    control_length: int = CONTROL_BLOCK_SIZE

    def render(self, script_len: str) -> bytes:
        banner = f"Installing {self.display_name} v{self.version}...".replace("\n", " ")
        text = PREAMBLE_TEMPLATE.format(
            script_len=script_len,
            banner=shlex.quote(banner),
            control_len=self.control_length,
            data_len=self.data_length,
            control_archive=CONTROL_ARCHIVE_NAME,
        )
        return text.encode("utf-8")


def render_preamble(fields: PreambleFields, width: int = LENGTH_FIELD_WIDTH) -> bytes:
    """Render the preamble with its own byte length written into it.

    The length field is rendered as zeros of ``width`` digits, measured, then
    overwritten by the zero-padded measured length.  When the length needs
    more digits the field is widened and the render repeated.
    """
    while True:
        draft = fields.render("0" * width)
        length = len(draft)
        length_field = str(length).zfill(width)
        if len(length_field) > width:
            width = len(length_field)
            continue

        final = fields.render(length_field)
        if len(final) != length:
            raise AssemblyError(
                f"Preamble length changed during substitution ({length} -> {len(final)})"
            )
        return final


def read_length_field(head: bytes) -> int:
    """Parse the preamble length stored at :data:`LENGTH_FIELD_OFFSET`."""
    if not head.startswith(LENGTH_FIELD_PREFIX):
        raise ValueError("missing preamble length field")
    digits = head[LENGTH_FIELD_OFFSET:].split(b"\n", 1)[0]
    if not digits.isdigit():
        raise ValueError(f"malformed preamble length field: {digits[:20]!r}")
    return int(digits)


def _normalize_member(info: tarfile.TarInfo, mtime: int) -> tarfile.TarInfo:
    info.uid = 0
    info.gid = 0
    info.uname = "root"
    info.gname = "root"
    info.mtime = mtime
    info.pax_headers = {}
    if info.isdir():
        info.mode = 0o755
    elif info.isfile():
        info.mode = 0o755 if info.mode & 0o111 else 0o644
    return info


def write_tree_archive(source_dir: Path, output: BinaryIO, mtime: int = 0) -> None:
    """Write ``source_dir`` as a reproducible gzip tarball to ``output``.

    Members are sorted and carry fixed owners and mtimes so identical trees
    produce identical bytes.
    """
    entries = sorted(source_dir.rglob("*"), key=lambda item: item.relative_to(source_dir).as_posix())
    with gzip.GzipFile(filename="", mode="wb", fileobj=output, mtime=0, compresslevel=9) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
            for entry in entries:
                tar.add(
                    entry,
                    arcname=entry.relative_to(source_dir).as_posix(),
                    recursive=False,
                    filter=lambda info: _normalize_member(info, mtime),
                )


def wrap_control_archive(control_archive: bytes, mtime: int = 0) -> bytes:
    """Wrap the compressed control archive in an uncompressed tar."""
    info = tarfile.TarInfo(CONTROL_ARCHIVE_NAME)
    info.size = len(control_archive)
    info.mode = 0o644
    _normalize_member(info, mtime)

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
        tar.addfile(info, io.BytesIO(control_archive))
    return buffer.getvalue()


@dataclass
class BuildContext:
    """Working paths and computed lengths owned by one assembly run."""

    workspace: Path
    data_dir: Path = field(init=False)
    control_dir: Path = field(init=False)
    data_archive: Path = field(init=False)
    binary_name: str = ""
    data_length: int = 0
    control_length: int = 0
    control_block: bytes = b""
    preamble: bytes = b""

    def __post_init__(self) -> None:
        self.data_dir = self.workspace / "data"
        self.control_dir = self.workspace / "control"
        self.data_archive = self.workspace / DATA_ARCHIVE_NAME

    @property
    def preamble_length(self) -> int:
        return len(self.preamble)

    @property
    def container_size(self) -> int:
        return self.preamble_length + CONTROL_BLOCK_SIZE + self.data_length + FOOTER_SIZE


@dataclass
class AssemblyResult:
    """Outcome of a successful assembly."""

    output_path: Path
    descriptor: PackageDescriptor
    binary_name: str
    preamble_length: int
    control_length: int
    data_length: int
    timestamp: int


class QpkgAssembler:
    """Combine descriptor, hooks and payload into one QPKG container."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
        archive_mtime: int = 0,
    ) -> None:
        self.logger = logger or logging.getLogger("deb2qpkg.assembler")
        self.clock = clock
        self.archive_mtime = archive_mtime

    def assemble(
        self,
        descriptor: PackageDescriptor,
        payload: Path,
        output_dir: Path,
        binary_name: Optional[str] = None,
        hook_script: Optional[str] = None,
        service_script: Optional[Path] = None,
        aux_files: Optional[Mapping[str, Path]] = None,
        icon: Optional[Path] = None,
        output_name: Optional[str] = None,
        log_callback=None,
    ) -> AssemblyResult:
        """Build ``output_dir/<name>_<version>_<arch>.qpkg`` from ``payload``.

        Nothing is left at the output path unless every stage succeeds.
        """
        payload = payload.expanduser()
        if not payload.is_file():
            raise AssemblyError(f"Payload binary does not exist: {payload}")
        if descriptor.service and service_script is None:
            raise AssemblyError("Service packages need a service script")
        if service_script is not None and not service_script.is_file():
            raise AssemblyError(f"Service script does not exist: {service_script}")

        output_path = output_dir.expanduser() / (output_name or descriptor.container_filename())
        ctx = BuildContext(create_temp_dir("deb2qpkg-build-"))
        ctx.binary_name = binary_name or payload.name
        try:
            self._stage_payload(ctx, descriptor, payload, service_script, aux_files or {}, icon)
            self._emit(log_callback, "Data files collected")

            self._build_data_block(ctx)
            self._emit(log_callback, f"{DATA_ARCHIVE_NAME} created ({ctx.data_length} bytes)")

            routines = hook_script if hook_script is not None else render_package_routines(descriptor, ctx.binary_name)
            self._build_control_block(ctx, descriptor, routines)
            self._emit(log_callback, f"Control block created ({CONTROL_BLOCK_SIZE} bytes)")

            ctx.preamble = render_preamble(
                PreambleFields(
                    display_name=descriptor.display_name,
                    version=descriptor.version,
                    data_length=ctx.data_length,
                )
            )
            if read_length_field(ctx.preamble) != ctx.preamble_length:
                raise AssemblyError("Preamble does not report its own length")

            timestamp = int(self.clock())
            self._write_container(ctx, descriptor, output_path, timestamp)
            self._emit(log_callback, f"QPKG assembled: {output_path}")
        finally:
            cleanup_dir(ctx.workspace, self.logger)

        return AssemblyResult(
            output_path=output_path,
            descriptor=descriptor,
            binary_name=ctx.binary_name,
            preamble_length=ctx.preamble_length,
            control_length=ctx.control_length,
            data_length=ctx.data_length,
            timestamp=timestamp,
        )

    def _emit(self, log_callback, message: str) -> None:
        self.logger.info(message)
        if log_callback:
            log_callback(message)

    def _stage_payload(
        self,
        ctx: BuildContext,
        descriptor: PackageDescriptor,
        payload: Path,
        service_script: Optional[Path],
        aux_files: Mapping[str, Path],
        icon: Optional[Path],
    ) -> None:
        """Copy binary, service script, auxiliary files and icons into the data tree."""
        staged: dict[str, Path] = {ctx.binary_name: payload}
        if service_script is not None and descriptor.service_program:
            staged[descriptor.service_program] = service_script

        for relative, source in aux_files.items():
            pure = PurePosixPath(relative)
            if pure.is_absolute() or ".." in pure.parts or not pure.parts:
                raise AssemblyError(f"Auxiliary file must use a relative path: {relative}")
            if pure.as_posix() in staged:
                raise AssemblyError(f"Auxiliary file collides with another staged file: {relative}")
            if not Path(source).is_file():
                raise AssemblyError(f"Auxiliary file does not exist: {source}")
            staged[pure.as_posix()] = Path(source)

        try:
            ctx.data_dir.mkdir(parents=True)
            for relative, source in staged.items():
                target = ctx.data_dir / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, target)
                executable = relative in {ctx.binary_name, descriptor.service_program} or os.access(source, os.X_OK)
                target.chmod(0o755 if executable else 0o644)

            stage_icons(ctx.data_dir / ICON_SUBDIR, descriptor.name, icon, self.logger)
        except OSError as exc:
            raise AssemblyError(f"Failed to stage payload: {exc}") from exc

    def _build_data_block(self, ctx: BuildContext) -> None:
        try:
            with ctx.data_archive.open("wb") as output:
                write_tree_archive(ctx.data_dir, output, self.archive_mtime)
        except (OSError, tarfile.TarError) as exc:
            raise AssemblyError(f"Failed to create {DATA_ARCHIVE_NAME}: {exc}") from exc
        ctx.data_length = ctx.data_archive.stat().st_size

    def _build_control_block(self, ctx: BuildContext, descriptor: PackageDescriptor, routines: str) -> None:
        """Write qpkg.cfg, hooks and installer, then pad to the fixed block size."""
        try:
            ctx.control_dir.mkdir(parents=True)
            cfg_text = descriptor.render_cfg({LAYOUT_DATA_LEN_KEY: str(ctx.data_length)})
            (ctx.control_dir / "qpkg.cfg").write_text(cfg_text, encoding="utf-8")
            (ctx.control_dir / "package_routines").write_text(routines, encoding="utf-8")
            (ctx.control_dir / "package_routines").chmod(0o755)
            (ctx.control_dir / "qinstall.sh").write_text(render_qinstall(), encoding="utf-8")
            (ctx.control_dir / "qinstall.sh").chmod(0o755)

            buffer = io.BytesIO()
            write_tree_archive(ctx.control_dir, buffer, self.archive_mtime)
            wrapped = wrap_control_archive(buffer.getvalue(), self.archive_mtime)
        except (OSError, tarfile.TarError) as exc:
            raise AssemblyError(f"Failed to create control archive: {exc}") from exc

        ctx.control_length = len(wrapped)
        if ctx.control_length > CONTROL_BLOCK_SIZE:
            raise AssemblyError(
                f"Control archive is {ctx.control_length} bytes, over the {CONTROL_BLOCK_SIZE} byte block"
            )
        ctx.control_block = wrapped.ljust(CONTROL_BLOCK_SIZE, b"\0")

    def _write_container(
        self,
        ctx: BuildContext,
        descriptor: PackageDescriptor,
        output_path: Path,
        timestamp: int,
    ) -> None:
        """Concatenate all regions into a temp file and move it into place."""
        footer = Footer(timestamp=timestamp, display_name=descriptor.display_name, version=descriptor.version)

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            free = shutil.disk_usage(output_path.parent).free
        except OSError as exc:
            raise AssemblyError(f"Cannot prepare output directory {output_path.parent}: {exc}") from exc
        if free < ctx.container_size:
            raise AssemblyError(
                f"Insufficient space in {output_path.parent}: need {ctx.container_size} bytes, have {free}"
            )

        handle = tempfile.NamedTemporaryFile(
            dir=output_path.parent,
            prefix=f".{output_path.name}.",
            suffix=".partial",
            delete=False,
        )
        temp_path = Path(handle.name)
        try:
            with handle:
                handle.write(ctx.preamble)
                handle.write(ctx.control_block)
                with ctx.data_archive.open("rb") as data:
                    shutil.copyfileobj(data, handle)
                handle.write(footer.to_bytes())

            written = temp_path.stat().st_size
            if written != ctx.container_size:
                raise AssemblyError(f"Container size mismatch: wrote {written}, expected {ctx.container_size}")
            temp_path.chmod(0o755)
            os.replace(temp_path, output_path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise AssemblyError(f"Failed to write {output_path}: {exc}") from exc
        except AssemblyError:
            temp_path.unlink(missing_ok=True)
            raise
