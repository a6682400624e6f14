import base64
import io
import os
import tarfile

import pytest

from deb2qpkg.assembler import (
    CONTROL_BLOCK_SIZE,
    FOOTER_MAGIC,
    FOOTER_SIZE,
    LENGTH_FIELD_OFFSET,
    Footer,
    PreambleFields,
    QpkgAssembler,
    footer_field_span,
    read_length_field,
    render_preamble,
)
from deb2qpkg.descriptor import PackageDescriptor
from deb2qpkg.utils import AssemblyError


def _assemble(payload, output_dir, clock, descriptor=None, **kwargs):
    assembler = QpkgAssembler(clock=clock)
    return assembler.assemble(descriptor or PackageDescriptor(name="hello"), payload, output_dir, **kwargs)


def test_container_regions_line_up(payload, tmp_path, fixed_clock):
    result = _assemble(payload, tmp_path / "out", fixed_clock)
    data = result.output_path.read_bytes()

    assert result.output_path.name == "hello_1.0.0_x86_64.qpkg"
    assert os.access(result.output_path, os.X_OK)
    assert len(data) == result.preamble_length + CONTROL_BLOCK_SIZE + result.data_length + FOOTER_SIZE

    length = read_length_field(data[:64])
    assert length == result.preamble_length
    assert data[LENGTH_FIELD_OFFSET - len("script_len="):LENGTH_FIELD_OFFSET] == b"script_len="
    assert data[:length].endswith(b"exit $status\n")

    control = data[length:length + CONTROL_BLOCK_SIZE]
    assert len(control) == CONTROL_BLOCK_SIZE
    assert control[result.control_length:] == b"\0" * (CONTROL_BLOCK_SIZE - result.control_length)
    with tarfile.open(fileobj=io.BytesIO(control), mode="r:") as wrapper:
        assert wrapper.getnames() == ["control.tar.gz"]

    data_block = data[length + CONTROL_BLOCK_SIZE:-FOOTER_SIZE]
    with tarfile.open(fileobj=io.BytesIO(data_block), mode="r:gz") as tar:
        names = tar.getnames()
        assert tar.extractfile("hello").read() == payload.read_bytes()
        assert tar.getmember("hello").mode == 0o755
        assert tar.getmember("hello").uname == "root"
    assert ".qpkg_icon/hello.png" in names

    footer = Footer.from_bytes(data[-FOOTER_SIZE:])
    assert footer.magic == FOOTER_MAGIC
    assert footer.timestamp == 1700000000
    assert footer.display_name == "hello"
    assert footer.version == "1.0.0"


def test_preamble_length_field_widens_when_needed():
    fields = PreambleFields(display_name="x", version="1", data_length=10)

    narrow = render_preamble(fields, width=1)

    assert read_length_field(narrow) == len(narrow)
    assert len(narrow[LENGTH_FIELD_OFFSET:].split(b"\n", 1)[0]) == len(str(len(narrow)))
    default = render_preamble(fields)
    assert read_length_field(default) == len(default)


def test_footer_fields_are_truncated_to_width():
    footer = Footer(timestamp=42, display_name="A very long display name indeed", version="2024.01.01-rc1")
    raw = footer.to_bytes()

    assert len(raw) == FOOTER_SIZE
    parsed = Footer.from_bytes(raw)
    assert parsed.display_name == "A very long display"
    assert parsed.version == "2024.01.01"
    assert parsed.magic == "QNAPQPKG"


def test_footer_layout_mismatch_raises(monkeypatch):
    monkeypatch.setattr("deb2qpkg.assembler.FOOTER_FIELDS", (("timestamp", 10), ("magic", 10)))

    with pytest.raises(AssemblyError) as excinfo:
        Footer(timestamp=1, display_name="x", version="1").to_bytes()
    assert "expected 100" in str(excinfo.value)


def test_assembly_is_reproducible_apart_from_timestamp(payload, tmp_path):
    first = _assemble(payload, tmp_path / "a", lambda: 1000000000).output_path.read_bytes()
    second = _assemble(payload, tmp_path / "b", lambda: 2000000000).output_path.read_bytes()

    assert len(first) == len(second)
    start, end = footer_field_span("timestamp")
    offset = len(first) - FOOTER_SIZE
    differing = [index for index in range(len(first)) if first[index] != second[index]]
    assert differing
    assert all(offset + start <= index < offset + end for index in differing)


def test_control_block_over_budget_fails(payload, tmp_path, fixed_clock):
    noise = base64.b64encode(os.urandom(40000)).decode()
    output_dir = tmp_path / "out"

    with pytest.raises(AssemblyError) as excinfo:
        _assemble(payload, output_dir, fixed_clock, hook_script=f"#!/bin/sh\n# {noise}\n")

    assert "20480" in str(excinfo.value)
    assert not any(output_dir.glob("*.qpkg"))


def test_missing_payload_fails(tmp_path, fixed_clock):
    with pytest.raises(AssemblyError):
        _assemble(tmp_path / "missing", tmp_path / "out", fixed_clock)


def test_service_package_requires_service_script(payload, tmp_path, fixed_clock):
    descriptor = PackageDescriptor(name="svc", service=True, service_port=8080)

    with pytest.raises(AssemblyError):
        _assemble(payload, tmp_path / "out", fixed_clock, descriptor=descriptor)


def test_service_script_and_aux_files_are_staged(payload, tmp_path, fixed_clock):
    script = tmp_path / "svc.sh"
    script.write_text("#!/bin/sh\ncase $1 in start) ;; esac\n")
    config = tmp_path / "app.ini"
    config.write_text("[app]\n")
    descriptor = PackageDescriptor(name="svc", service=True, service_port=8080, webui_path="/")

    result = _assemble(
        payload,
        tmp_path / "out",
        fixed_clock,
        descriptor=descriptor,
        service_script=script,
        aux_files={"etc/app.ini": config},
    )
    data = result.output_path.read_bytes()
    block = data[result.preamble_length + CONTROL_BLOCK_SIZE:-FOOTER_SIZE]
    with tarfile.open(fileobj=io.BytesIO(block), mode="r:gz") as tar:
        assert tar.getmember("svc.sh").mode == 0o755
        assert tar.getmember("etc/app.ini").mode == 0o644
        assert tar.extractfile("etc/app.ini").read() == b"[app]\n"


def test_aux_files_must_stay_relative(payload, tmp_path, fixed_clock):
    config = tmp_path / "app.ini"
    config.write_text("x")

    with pytest.raises(AssemblyError):
        _assemble(payload, tmp_path / "out", fixed_clock, aux_files={"../app.ini": config})
