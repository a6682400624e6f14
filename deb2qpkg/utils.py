#!/usr/bin/env python3
"""Utility helpers for deb2qpkg."""

from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import subprocess
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from tarfile import TarFile, TarInfo
from typing import Callable, Optional

LogCallback = Optional[Callable[[str], None]]
ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~]|[\(\)][0-9A-Za-z])")

MACHINE_TO_DEB_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "i386": "i386",
    "i686": "i386",
}


class Deb2QpkgError(Exception):
    """Base exception for all deb2qpkg errors.

    Every error names the pipeline stage it was raised from.
    """

    stage = "deb2qpkg"

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        if stage:
            self.stage = stage

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class ValidationError(Deb2QpkgError):
    """Raised when input validation fails."""

    stage = "validate"


class CommandExecutionError(Deb2QpkgError):
    """Raised when a subprocess returns a non-zero exit status."""

    stage = "command"

    def __init__(self, message: str, returncode: Optional[int] = None, output: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output or []


class FetchError(Deb2QpkgError):
    """Raised when a remote payload or archive cannot be downloaded."""

    stage = "fetch"


class ResolutionError(Deb2QpkgError):
    """Raised when a foreign package cannot be unpacked or yields no executable."""

    stage = "resolve"


class AmbiguousExecutableError(ResolutionError):
    """Raised when several executables qualify and the caller made no choice."""

    def __init__(self, candidates: tuple[str, ...]) -> None:
        super().__init__(f"{len(candidates)} executables found; choose one explicitly")
        self.candidates = candidates


class AssemblyError(Deb2QpkgError):
    """Raised when the QPKG container cannot be assembled."""

    stage = "assemble"


class InstallError(Deb2QpkgError):
    """Raised when a QPKG container cannot be extracted or registered."""

    stage = "install"


def setup_logging(name: str = "deb2qpkg", level: int = logging.INFO) -> logging.Logger:
    """Create and configure a logger with consistent formatting."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logger.addHandler(stream_handler)
    return logger


def create_temp_dir(prefix: str = "deb2qpkg-") -> Path:
    """Create a scoped temporary workspace directory."""
    return Path(tempfile.mkdtemp(prefix=prefix))


def cleanup_dir(path: Optional[Path], logger: Optional[logging.Logger] = None) -> None:
    """Best-effort temporary directory cleanup."""
    if path is None:
        return
    try:
        shutil.rmtree(path, ignore_errors=False)
    except FileNotFoundError:
        return
    except OSError as exc:  # pragma: no cover - best effort cleanup
        if logger:
            logger.warning("Failed to cleanup %s: %s", path, exc)


def command_exists(binary: str) -> bool:
    """Return True if a binary is available in PATH."""
    return shutil.which(binary) is not None


def host_architecture() -> str:
    """Return the Debian-style architecture name of the running host."""
    machine = platform.machine().lower()
    return MACHINE_TO_DEB_ARCH.get(machine, machine or "unknown")


def sanitize_package_name(name: str) -> str:
    """Convert a foreign package name into a QPKG identifier.

    QPKG names allow only ASCII letters, digits, dash and underscore.
    """
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "-", name.strip())
    return cleaned or "unknown-package"


def strip_email(maintainer: str) -> str:
    """Drop a trailing ``<address>`` from a maintainer field."""
    return re.sub(r"\s*<[^>]*>", "", maintainer).strip()


def _member_target(root: Path, member_name: str) -> Optional[Path]:
    """Resolve where a tar member would land, or None if it escapes ``root``."""
    target = (root / member_name.lstrip("/")).resolve()
    if target != root and root not in target.parents:
        return None
    return target


def _write_member(tar: TarFile, member: TarInfo, target: Path, error_type: type[Deb2QpkgError]) -> None:
    source = tar.extractfile(member)
    if source is None:
        raise error_type(f"Unable to read tar member: {member.name}")

    target.parent.mkdir(parents=True, exist_ok=True)
    with source, target.open("wb") as output:
        shutil.copyfileobj(source, output)

    if member.mode & 0o777:
        target.chmod(member.mode & 0o777)


def safe_extract_tar(
    tar: TarFile,
    destination: Path,
    logger: Optional[logging.Logger] = None,
    error_type: type[Deb2QpkgError] = ResolutionError,
) -> None:
    """Extract directories and regular files from ``tar`` into ``destination``.

    Any member resolving outside the destination aborts the extraction with
    ``error_type``. Links, devices and FIFOs are skipped with a warning, so a
    payload never carries anything but plain files onto the host.
    """
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()

    for member in tar.getmembers():
        target = _member_target(root, member.name)
        if target is None:
            raise error_type(f"Unsafe archive path detected: {member.name}")

        if member.isdir():
            target.mkdir(parents=True, exist_ok=True)
            # keep directories traversable by the owner
            if member.mode & 0o777:
                target.chmod((member.mode & 0o777) | 0o700)
        elif member.isfile():
            _write_member(tar, member, target, error_type)
        elif logger:
            logger.warning("Skipping %s archive member: %s", _member_kind(member), member.name)


def _member_kind(member: TarInfo) -> str:
    if member.issym() or member.islnk():
        return "link"
    if member.isdev() or member.isfifo():
        return "special"
    return "unsupported"


def strip_ansi_escapes(text: str) -> str:
    """Remove ANSI terminal escape codes from a log line."""
    return ANSI_ESCAPE_RE.sub("", text)


def run_command(
    cmd: list[str],
    logger: logging.Logger,
    cwd: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
    log_callback: LogCallback = None,
    check: bool = True,
) -> tuple[int, list[str]]:
    """Run ``cmd`` with stderr folded into stdout, relaying each line as it arrives.

    Lines are logged at INFO and forwarded to ``log_callback``. With ``check``
    a non-zero exit raises :class:`CommandExecutionError` carrying the output.
    """
    logger.debug("Running command: %s", " ".join(cmd))

    with subprocess.Popen(
        cmd,
        cwd=str(cwd) if cwd else None,
        env={**os.environ, **(env or {})},
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
    ) as process:
        lines: list[str] = []
        for raw in process.stdout:
            line = strip_ansi_escapes(raw.rstrip("\n")).strip()
            lines.append(line)
            if not line:
                continue
            logger.info(line)
            if log_callback:
                log_callback(line)
        returncode = process.wait()

    if check and returncode != 0:
        raise CommandExecutionError(
            f"{cmd[0]} exited with status {returncode}: {' '.join(cmd)}\n" + "\n".join(lines),
            returncode=returncode,
            output=lines,
        )
    return returncode, lines


def is_remote_source(source: str) -> bool:
    """Return True when a CLI/GUI source argument is an http(s) URL."""
    return source.lower().startswith(("http://", "https://"))


def url_basename(url: str) -> str:
    """Return the last path segment of a URL without its query string."""
    path = urllib.parse.urlparse(url).path
    return Path(path).name or "download"


def fetch_url(
    url: str,
    destination: Path,
    logger: logging.Logger,
    log_callback: LogCallback = None,
    timeout: float = 60.0,
) -> Path:
    """Download ``url`` into ``destination`` in one blocking transfer.

    There is no retry: a transport error, a non-200 status or an empty body
    raises :class:`FetchError`.
    """
    logger.info("Downloading %s", url)
    if log_callback:
        log_callback(f"Downloading {url}")

    request = urllib.request.Request(url, headers={"User-Agent": "deb2qpkg"})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = getattr(response, "status", 200)
            if status != 200:
                raise FetchError(f"Download failed with HTTP status {status}: {url}")
            destination.parent.mkdir(parents=True, exist_ok=True)
            with destination.open("wb") as output:
                shutil.copyfileobj(response, output)
    except urllib.error.URLError as exc:
        raise FetchError(f"Download failed: {url}: {exc}") from exc
    except OSError as exc:
        raise FetchError(f"Download failed: {url}: {exc}") from exc

    if destination.stat().st_size == 0:
        destination.unlink(missing_ok=True)
        raise FetchError(f"Download returned an empty file: {url}")

    return destination
