import io
import tarfile
from pathlib import Path

import pytest

from deb2qpkg.runtime import HostLayout

FIXED_TIME = 1700000000

SAMPLE_CONTROL = """Package: sample
Version: 2.3.1
Architecture: amd64
Maintainer: Jane Packager <jane@example.org>
Description: Sample command line tool
 A longer description that spans
 more than one line.
"""


def tar_bytes(files, compression="gz"):
    """Build a tar archive from ``{name: (content, mode)}``."""
    buffer = io.BytesIO()
    mode = f"w:{compression}" if compression else "w"
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        for name, (content, file_mode) in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = file_mode
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def ar_bytes(members):
    """Build a System V ``ar`` archive from ``[(name, content)]``."""
    out = bytearray(b"!<arch>\n")
    for name, content in members:
        header = (
            name.ljust(16)
            + "0".ljust(12)
            + "0".ljust(6)
            + "0".ljust(6)
            + "100644".ljust(8)
            + str(len(content)).ljust(10)
            + "`\n"
        )
        out += header.encode("ascii")
        out += content
        if len(content) % 2:
            out += b"\n"
    return bytes(out)


def write_deb(path: Path, control: str, files, compression="gz") -> Path:
    suffix = {"gz": ".gz", "xz": ".xz", "bz2": ".bz2", "": ""}[compression]
    members = [
        ("debian-binary", b"2.0\n"),
        ("control.tar.gz", tar_bytes({"./control": (control.encode(), 0o644)})),
        (f"data.tar{suffix}", tar_bytes(files, compression)),
    ]
    path.write_bytes(ar_bytes(members))
    return path


@pytest.fixture
def make_deb(tmp_path):
    def factory(name="sample_2.3.1_amd64.deb", control=SAMPLE_CONTROL, files=None, compression="gz"):
        if files is None:
            files = {
                "./usr/bin/sample": (b"#!/bin/sh\necho sample\n", 0o755),
                "./usr/share/doc/sample/copyright": (b"MIT\n", 0o644),
            }
        return write_deb(tmp_path / name, control, files, compression)

    return factory


@pytest.fixture
def sample_deb(make_deb):
    return make_deb()


@pytest.fixture
def no_dpkg(monkeypatch):
    monkeypatch.setattr("deb2qpkg.resolver.command_exists", lambda binary: False)


@pytest.fixture
def payload(tmp_path):
    binary = tmp_path / "src" / "hello"
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"#!/bin/sh\necho hello\n")
    binary.chmod(0o755)
    return binary


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_TIME


@pytest.fixture
def host_layout(tmp_path):
    root = tmp_path / "host"
    return HostLayout(
        conf_path=root / "etc" / "config" / "qpkg.conf",
        smb_conf=root / "etc" / "config" / "smb.conf",
        volume=root / "share" / "CACHEDEV1_DATA",
        icon_dir=root / "home" / "httpd" / "RSS" / "pkg_icons",
    )
