from conftest import write_deb
from deb2qpkg.main import main
from deb2qpkg.registry import QpkgRegistry
from deb2qpkg.runtime import QpkgContainer

MULTI_CONTROL = "Package: toolbox\nVersion: 0.5\nArchitecture: all\n"
MULTI_FILES = {
    "./usr/bin/alpha": (b"a", 0o755),
    "./usr/bin/beta": (b"b", 0o755),
    "./usr/lib/libtool.so.1": (b"lib", 0o755),
}


def _answers(monkeypatch, *answers):
    pending = list(answers)
    monkeypatch.setattr("builtins.input", lambda prompt="": pending.pop(0))


def test_build_bare_binary(tmp_path, payload):
    out = tmp_path / "out"

    assert main(["build", str(payload), "--name", "hello", "--version", "1.2", "--output-dir", str(out), "--yes"]) == 0

    container = QpkgContainer.open(out / "hello_1.2_x86_64.qpkg")
    assert container.descriptor.name == "hello"
    assert container.descriptor.version == "1.2"


def test_build_defaults_name_from_binary(tmp_path, payload):
    assert main(["build", str(payload), "--output-dir", str(tmp_path), "--no-input"]) == 0
    assert (tmp_path / "hello_1.0.0_x86_64.qpkg").is_file()


def test_inspect_lists_candidates(sample_deb, no_dpkg, capsys):
    assert main(["inspect", str(sample_deb)]) == 0

    out = capsys.readouterr().out
    assert "Package: sample" in out
    assert "usr/bin/sample" in out


def test_build_from_deb_with_prompted_choice(tmp_path, no_dpkg, monkeypatch, capsys):
    deb = write_deb(tmp_path / "toolbox_0.5_all.deb", MULTI_CONTROL, MULTI_FILES)
    _answers(monkeypatch, "2", "y")

    assert main(["build", str(deb), "--output-dir", str(tmp_path / "out")]) == 0

    out = capsys.readouterr().out
    assert "1) usr/bin/alpha" in out
    assert "libtool" not in out
    container = QpkgContainer.open(tmp_path / "out" / "toolbox_0.5_x86_64.qpkg")
    staged = container.extract_data(tmp_path / "staged")
    assert (staged / "beta").read_bytes() == b"b"


def test_build_ambiguous_without_input_fails(tmp_path, no_dpkg, capsys):
    deb = write_deb(tmp_path / "toolbox_0.5_all.deb", MULTI_CONTROL, MULTI_FILES)

    assert main(["build", str(deb), "--no-input", "--output-dir", str(tmp_path)]) == 2
    assert "usr/bin/beta" in capsys.readouterr().out


def test_build_cancelled_at_confirmation(tmp_path, payload, monkeypatch):
    _answers(monkeypatch, "n")

    assert main(["build", str(payload), "--output-dir", str(tmp_path / "out")]) == 1
    assert not (tmp_path / "out").exists()


def test_build_rejects_invalid_descriptor(tmp_path, payload):
    assert main(["build", str(payload), "--name", "bad name", "--yes", "--output-dir", str(tmp_path)]) == 2
    assert main(["build", str(payload), "--webui", "/", "--yes", "--output-dir", str(tmp_path)]) == 2


def test_saved_project_rebuilds_package(tmp_path, sample_deb, no_dpkg):
    project = tmp_path / "qpkg-builder.conf"
    first = tmp_path / "first"
    second = tmp_path / "second"

    assert main(["build", str(sample_deb), "--author", "Me", "--yes", "--output-dir", str(first), "--save-config", str(project)]) == 0
    assert main(["build", "--config", str(project), "--yes", "--output-dir", str(second)]) == 0

    rebuilt = QpkgContainer.open(second / "sample_2.3.1_x86_64.qpkg")
    assert rebuilt.descriptor == QpkgContainer.open(first / "sample_2.3.1_x86_64.qpkg").descriptor
    assert rebuilt.descriptor.author == "Me"


def test_install_subcommand(tmp_path, payload, host_layout):
    out = tmp_path / "out"
    assert main(["build", str(payload), "--yes", "--output-dir", str(out)]) == 0

    code = main(
        [
            "install",
            str(out / "hello_1.0.0_x86_64.qpkg"),
            "--conf",
            str(host_layout.conf_path),
            "--volume",
            str(host_layout.volume),
            "--icon-dir",
            str(host_layout.icon_dir),
            "--force",
        ]
    )

    assert code == 0
    assert QpkgRegistry(host_layout.conf_path).get("hello")["Install_Path"] == str(host_layout.volume / ".qpkg" / "hello")


def test_install_missing_container_fails(tmp_path):
    assert main(["install", str(tmp_path / "missing.qpkg"), "--volume", str(tmp_path)]) == 2


def test_build_rejects_extra_files_sharing_a_name(tmp_path, payload, capsys):
    for folder in ("a", "b"):
        (tmp_path / folder).mkdir()
        (tmp_path / folder / "app.ini").write_text(folder)
    out = tmp_path / "out"

    code = main(
        [
            "build",
            str(payload),
            "--extra",
            str(tmp_path / "a" / "app.ini"),
            "--extra",
            str(tmp_path / "b" / "app.ini"),
            "--yes",
            "--output-dir",
            str(out),
        ]
    )

    assert code == 2
    assert "app.ini" in capsys.readouterr().out
    assert not out.exists()
