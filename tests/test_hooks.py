import re

import pytest

from deb2qpkg.descriptor import PackageDescriptor
from deb2qpkg.hooks import HOOK_NAMES, hook_function, render_hook_invocation, render_package_routines, render_qinstall


def test_hook_function_names():
    assert [hook_function(hook) for hook in HOOK_NAMES] == [
        "pkg_pre_install",
        "pkg_install",
        "pkg_post_install",
        "pkg_pre_remove",
        "pkg_main_remove",
        "pkg_post_remove",
    ]
    with pytest.raises(ValueError):
        hook_function("reboot")


def test_default_routines_define_every_hook():
    routines = render_package_routines(PackageDescriptor(name="tool"), "tool")

    for hook in HOOK_NAMES:
        assert f"{hook_function(hook)}() {{" in routines
    assert "chown" not in routines
    assert ".pid" not in routines


def test_service_routines_prepare_data_dirs_for_non_root_user():
    descriptor = PackageDescriptor(name="svc", service=True, service_port=8080, run_as_user="admin")
    routines = render_package_routines(descriptor, "svc-bin")

    assert 'chmod +x "${root}/svc.sh"' in routines
    assert "chown -R admin:everyone" in routines
    assert "svc-bin.pid" in routines


def test_hook_invocation_sources_routines():
    snippet = render_hook_invocation("post_install")

    assert snippet.startswith("[ -f ./package_routines ] && . ./package_routines")
    assert "pkg_post_install" in snippet


def test_qinstall_has_no_unrendered_tokens():
    script = render_qinstall()

    assert script.startswith("#!/bin/sh")
    assert not re.search(r"__[A-Z_]+__", script)
    assert "/etc/config/qpkg.conf" in script
    assert "/home/httpd/RSS/pkg_icons" in script
    assert script.index("pkg_pre_install") < script.index("register Name") < script.index("pkg_post_install || echo")


def test_qinstall_swaps_in_rebuilt_registry_after_every_key():
    script = render_qinstall()

    assert "awk -v section=" in script
    assert script.index("register Web_Port") < script.index('mv -f "$NEW_CONF" "$CONF"') < script.index('rm -rf "$BACKUP"\n\nif')
    for variable in ("QPKG_GETCFG", "QPKG_SETCFG", "QPKG_ICON_DIR", "QPKG_SMB_CONF"):
        assert variable in script
