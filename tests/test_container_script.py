import os
import shutil
import subprocess

import pytest

from deb2qpkg.assembler import QpkgAssembler
from deb2qpkg.descriptor import PackageDescriptor
from deb2qpkg.registry import QpkgRegistry

pytestmark = pytest.mark.skipif(
    not all(shutil.which(tool) for tool in ("sh", "awk", "tar", "tail", "head", "mktemp")),
    reason="needs a POSIX shell toolbox",
)

SETCFG = """#!/bin/sh
# setcfg SECTION KEY VALUE -f FILE, appending to the last section
{guard}
last=$(grep '^\\[' "$5" | tail -n 1)
[ "$last" = "[$1]" ] || printf '[%s]\\n' "$1" >> "$5"
printf '%s = %s\\n' "$2" "$3" >> "$5"
"""

PRIOR_REGISTRY = (
    "[Other]\nName = Other\nEnable = FALSE\n\n"
    "[hello]\nName = hello\nService_Port = 8080\nShell = /old/hello.sh\nWeb_URL = /\n\n"
)


def _tool(path, text):
    path.write_text(text)
    path.chmod(0o755)
    return path


@pytest.fixture
def host(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    volume = tmp_path / "volume"
    env = dict(
        os.environ,
        QPKG_CONF=str(tmp_path / "etc" / "qpkg.conf"),
        QPKG_SMB_CONF=str(tmp_path / "etc" / "smb.conf"),
        QPKG_ICON_DIR=str(tmp_path / "icons"),
        QPKG_GETCFG=str(_tool(bin_dir / "getcfg", f'#!/bin/sh\necho "{volume}/Public"\n')),
        QPKG_SETCFG=str(_tool(bin_dir / "setcfg", SETCFG.format(guard=""))),
        QPKG_FORCE="1",
    )
    env.pop("QPKG_ROOT", None)
    return {"env": env, "volume": volume, "conf": tmp_path / "etc" / "qpkg.conf", "bin": bin_dir}


def _container(tmp_path, payload, descriptor):
    assembler = QpkgAssembler(clock=lambda: 1700000000)
    return assembler.assemble(descriptor, payload, tmp_path / "out").output_path


def _run(container, env):
    return subprocess.run(["sh", str(container)], env=env, capture_output=True, text=True, timeout=60)


def test_container_installs_itself_and_replaces_registry_section(tmp_path, payload, host):
    host["conf"].parent.mkdir(parents=True)
    host["conf"].write_text(PRIOR_REGISTRY)
    container = _container(tmp_path, payload, PackageDescriptor(name="hello", display_name="Hello", version="2.0"))

    completed = _run(container, host["env"])

    assert completed.returncode == 0, completed.stderr
    install_dir = host["volume"] / ".qpkg" / "hello"
    assert (install_dir / "hello").read_bytes() == payload.read_bytes()
    assert os.access(install_dir / "hello", os.X_OK)
    assert (tmp_path / "icons" / "hello.png").is_file()
    assert not (install_dir.parent / "hello.previous").exists()
    assert not host["conf"].with_name("qpkg.conf.incoming").exists()

    registry = QpkgRegistry(host["conf"])
    assert registry.get("hello") == {
        "Name": "hello",
        "Install_Path": str(install_dir),
        "Enable": "TRUE",
        "Display_Name": "Hello",
        "Version": "2.0",
    }
    assert registry.get("Other") == {"Name": "Other", "Enable": "FALSE"}


def test_container_registry_failure_leaves_host_untouched(tmp_path, payload, host):
    host["conf"].parent.mkdir(parents=True)
    host["conf"].write_text(PRIOR_REGISTRY)
    _tool(host["bin"] / "setcfg", SETCFG.format(guard='[ "$2" = "Version" ] && exit 1'))
    container = _container(tmp_path, payload, PackageDescriptor(name="fresh"))

    completed = _run(container, host["env"])

    assert completed.returncode != 0
    assert "registry update failed: Version" in completed.stderr
    assert host["conf"].read_text() == PRIOR_REGISTRY
    assert not host["conf"].with_name("qpkg.conf.incoming").exists()
    assert not (host["volume"] / ".qpkg" / "fresh").exists()
