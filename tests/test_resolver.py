import os
from pathlib import Path

import pytest

from conftest import tar_bytes
from deb2qpkg.resolver import (
    ForeignPackageResolver,
    descriptor_from_metadata,
    discover_executables,
    preselected_executable,
    select_executable,
)
from deb2qpkg.utils import (
    AmbiguousExecutableError,
    CommandExecutionError,
    ResolutionError,
    ValidationError,
)


def _touch(root: Path, relative: str, mode: int = 0o755) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x7fELF")
    path.chmod(mode)
    return path


def test_discovery_skips_libraries_and_share_trees(tmp_path):
    for relative in (
        "libfoo.so",
        "libfoo.so.2",
        "usr/share/doc/readme",
        "usr/bin/app",
        "opt/runtime/bin/launcher",
    ):
        _touch(tmp_path, relative)

    assert set(discover_executables(tmp_path)) == {"usr/bin/app", "opt/runtime/bin/launcher"}


def test_discovery_keeps_bin_below_library_roots(tmp_path):
    _touch(tmp_path, "usr/lib/jvm/bin/java")
    _touch(tmp_path, "usr/lib/helper")
    _touch(tmp_path, "usr/local/share/tool/run")
    _touch(tmp_path, "usr/bin/data.txt", 0o644)
    os.symlink(tmp_path / "usr/lib/jvm/bin/java", tmp_path / "java-link")

    assert discover_executables(tmp_path) == ("usr/lib/jvm/bin/java",)


def test_resolve_sample_deb_autofills_descriptor(sample_deb, no_dpkg):
    resolver = ForeignPackageResolver()
    resolved = resolver.resolve(sample_deb)
    try:
        assert resolved.candidates == ("usr/bin/sample",)
        assert resolved.warnings == []
        assert resolved.used_dpkg_deb is False
        assert resolved.path_of("usr/bin/sample").read_bytes().startswith(b"#!/bin/sh")

        selected = select_executable(resolved.candidates)
        descriptor = descriptor_from_metadata(resolved.metadata)
    finally:
        resolver.cleanup_workspace(resolved.temp_dir)

    assert selected == "usr/bin/sample"
    assert descriptor.name == "sample"
    assert descriptor.version == "2.3.1"
    assert descriptor.summary == "Sample command line tool"
    assert descriptor.author == "Jane Packager"
    assert not resolved.temp_dir.exists()


def test_resolve_warns_on_architecture_mismatch(sample_deb, no_dpkg):
    resolver = ForeignPackageResolver(target_arch="arm64")
    resolved = resolver.resolve(sample_deb)
    resolver.cleanup_workspace(resolved.temp_dir)

    assert len(resolved.warnings) == 1
    assert "amd64" in resolved.warnings[0]


def test_resolve_falls_back_when_dpkg_deb_fails(sample_deb, monkeypatch):
    monkeypatch.setattr("deb2qpkg.resolver.command_exists", lambda binary: True)

    def failing_run(cmd, logger, **kwargs):
        raise CommandExecutionError("dpkg-deb exploded")

    monkeypatch.setattr("deb2qpkg.resolver.run_command", failing_run)
    resolver = ForeignPackageResolver()
    resolved = resolver.resolve(sample_deb)
    resolver.cleanup_workspace(resolved.temp_dir)

    assert resolved.used_dpkg_deb is False
    assert resolved.candidates == ("usr/bin/sample",)
    assert resolved.metadata.package == "sample"


def test_resolve_handles_xz_data_member(make_deb, no_dpkg):
    deb = make_deb(files={"./usr/sbin/daemon": (b"binary", 0o755)}, compression="xz")
    resolver = ForeignPackageResolver()
    resolved = resolver.resolve(deb)
    resolver.cleanup_workspace(resolved.temp_dir)

    assert resolved.candidates == ("usr/sbin/daemon",)


def test_resolve_without_control_file_is_not_fatal(tmp_path, no_dpkg):
    from conftest import ar_bytes

    deb = tmp_path / "bare.deb"
    deb.write_bytes(
        ar_bytes(
            [
                ("debian-binary", b"2.0\n"),
                ("control.tar.gz", tar_bytes({"./md5sums": (b"", 0o644)})),
                ("data.tar.gz", tar_bytes({"./usr/bin/tool": (b"x", 0o755)})),
            ]
        )
    )
    resolver = ForeignPackageResolver()
    resolved = resolver.resolve(deb)
    resolver.cleanup_workspace(resolved.temp_dir)

    assert resolved.metadata.package == ""
    assert resolved.candidates == ("usr/bin/tool",)
    with pytest.raises(ValidationError):
        descriptor_from_metadata(resolved.metadata)
    assert descriptor_from_metadata(resolved.metadata, name="tool").name == "tool"


def test_resolve_rejects_invalid_deb(tmp_path):
    bogus = tmp_path / "broken.deb"
    bogus.write_bytes(b"not an ar archive")

    with pytest.raises(ResolutionError) as excinfo:
        ForeignPackageResolver().resolve(bogus)
    assert str(excinfo.value).startswith("[resolve]")


def test_resolve_rejects_missing_and_unsupported_files(tmp_path):
    resolver = ForeignPackageResolver()
    with pytest.raises(ValidationError):
        resolver.resolve(tmp_path / "missing.deb")

    other = tmp_path / "tool.rpm"
    other.write_bytes(b"rpm")
    with pytest.raises(ValidationError):
        resolver.resolve(other)


def test_resolve_tarball_uses_single_top_directory(tmp_path):
    tarball = tmp_path / "myapp-1.2.0-linux-x86_64.tar.gz"
    tarball.write_bytes(
        tar_bytes(
            {
                "myapp-1.2.0/bin/myapp": (b"binary", 0o755),
                "myapp-1.2.0/README": (b"docs", 0o644),
            }
        )
    )
    resolver = ForeignPackageResolver()
    resolved = resolver.resolve(tarball)
    resolver.cleanup_workspace(resolved.temp_dir)

    assert resolved.metadata.package == "myapp"
    assert resolved.metadata.version.startswith("1.2.0")
    assert resolved.metadata.architecture == "amd64"
    assert resolved.candidates == ("bin/myapp",)


def test_inspect_metadata_reads_control_only(sample_deb):
    metadata = ForeignPackageResolver().inspect_metadata(sample_deb)

    assert metadata.package == "sample"
    assert metadata.architecture == "amd64"
    assert "more than one line." in metadata.description


def test_parse_control_metadata_folds_continuations_and_ignores_case():
    text = "package: Foo_Bar\nVERSION: 1:2.0-1\nDescription: first\n second line\nArchitecture: ARM64\n"
    metadata = ForeignPackageResolver().parse_control_metadata(text, Path("foo.deb"))

    assert metadata.package == "Foo_Bar"
    assert metadata.version == "1:2.0-1"
    assert metadata.description == "first\nsecond line"
    assert metadata.summary == "first"
    assert metadata.architecture == "arm64"


def test_descriptor_from_metadata_sanitizes_name_and_overrides_win():
    metadata = ForeignPackageResolver().parse_control_metadata(
        "Package: my.tool+extra\nVersion: 0.9\n", Path("x.deb")
    )
    descriptor = descriptor_from_metadata(metadata, version="1.0", summary=None)

    assert descriptor.name == "my-tool-extra"
    assert descriptor.display_name == "my.tool+extra"
    assert descriptor.version == "1.0"


def test_select_executable_policy():
    candidates = ("opt/app/bin/run", "usr/bin/app", "usr/bin/helper")

    with pytest.raises(ResolutionError):
        select_executable(())

    with pytest.raises(AmbiguousExecutableError) as excinfo:
        select_executable(candidates)
    assert excinfo.value.candidates == candidates

    assert select_executable(candidates, 2) == "usr/bin/app"
    assert select_executable(candidates, "3") == "usr/bin/helper"
    assert select_executable(candidates, "/usr/bin/app") == "usr/bin/app"

    with pytest.raises(ResolutionError):
        select_executable(candidates, "4")
    with pytest.raises(ResolutionError):
        select_executable(candidates, "usr/bin/missing")


def test_select_executable_accepts_paths_beyond_listed_range():
    candidates = tuple(f"usr/bin/tool{index:02d}" for index in range(15))

    assert select_executable(candidates, "usr/bin/tool14") == "usr/bin/tool14"
    assert select_executable(candidates, 12) == "usr/bin/tool11"


def test_only_a_single_candidate_is_preselected():
    assert preselected_executable(("usr/bin/app",)) == "usr/bin/app"
    assert preselected_executable(()) is None
    assert preselected_executable(("usr/bin/app", "usr/bin/helper")) is None
