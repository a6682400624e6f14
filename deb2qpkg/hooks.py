#!/usr/bin/env python3
"""Shell text embedded in the QPKG control archive.

``package_routines`` carries the lifecycle hooks, ``qinstall.sh`` is the
on-device installer started by the container preamble.  Both are plain
POSIX ``sh`` because a NAS firmware cannot be assumed to ship Python.
"""

from __future__ import annotations

import shlex

from .descriptor import PackageDescriptor

HOOK_NAMES = (
    "pre_install",
    "install",
    "post_install",
    "pre_remove",
    "main_remove",
    "post_remove",
)

QPKG_CONF = "/etc/config/qpkg.conf"
SMB_CONF = "/etc/config/smb.conf"
DEFAULT_VOLUME = "/share/CACHEDEV1_DATA"
ICON_DIR = "/home/httpd/RSS/pkg_icons"
ICON_SUBDIR = ".qpkg_icon"


def hook_function(hook: str) -> str:
    """Return the shell function name for a lifecycle hook."""
    if hook not in HOOK_NAMES:
        raise ValueError(f"Unknown lifecycle hook: {hook}")
    return f"pkg_{hook}"


def render_package_routines(descriptor: PackageDescriptor, binary_name: str) -> str:
    """Render default lifecycle hooks for a staged payload."""
    name = descriptor.name
    binary = shlex.quote(binary_name)
    lines = [
        "#!/bin/sh",
        f"# Package routines for {name} QPKG",
        "",
        "_qpkg_root() {",
        '    if [ -n "$QPKG_ROOT" ]; then',
        '        echo "$QPKG_ROOT"',
        "    else",
        f"        ${{QPKG_GETCFG:-/sbin/getcfg}} {name} Install_Path -f {QPKG_CONF}",
        "    fi",
        "}",
        "",
        "pkg_pre_install() {",
        "    return 0",
        "}",
        "",
        "pkg_install() {",
        "    return 0",
        "}",
        "",
        "pkg_post_install() {",
        "    root=$(_qpkg_root)",
        f'    chmod +x "${{root}}"/{binary}',
    ]

    if descriptor.service:
        lines += [
            f'    chmod +x "${{root}}/{name}.sh"',
            '    mkdir -p "${root}/data" "${root}/log"',
        ]
        if descriptor.run_as_user != "root":
            lines += [
                f'    chown -R {descriptor.run_as_user}:everyone "${{root}}/data" "${{root}}/log"',
            ]

    lines += [
        "    return 0",
        "}",
        "",
        "pkg_pre_remove() {",
    ]

    if descriptor.service:
        lines += [
            "    root=$(_qpkg_root)",
            f'    pid_file="${{root}}"/{shlex.quote(binary_name + ".pid")}',
            '    if [ -f "$pid_file" ]; then',
            '        pid=$(cat "$pid_file" 2>/dev/null)',
            '        [ -n "$pid" ] && kill "$pid" 2>/dev/null',
            "        sleep 2",
            "    fi",
        ]

    lines += [
        "    return 0",
        "}",
        "",
        "pkg_main_remove() {",
        "    return 0",
        "}",
        "",
        "pkg_post_remove() {",
        "    return 0",
        "}",
        "",
    ]
    return "\n".join(lines)


def render_hook_invocation(hook: str, routines: str = "package_routines") -> str:
    """Shell snippet that sources ``routines`` and runs one hook if defined."""
    function = hook_function(hook)
    return (
        f"[ -f ./{routines} ] && . ./{routines}\n"
        f"if type {function} >/dev/null 2>&1; then\n"
        f"    {function}\n"
        "fi\n"
    )


QINSTALL_TEMPLATE = r"""#!/bin/sh
# QPKG installer script - run by the container preamble inside the
# extraction directory (qpkg.cfg, package_routines and data/ are present).

CONF="${QPKG_CONF:-__QPKG_CONF__}"
SMB_CONF="${QPKG_SMB_CONF:-__SMB_CONF__}"
ICON_DIR="${QPKG_ICON_DIR:-__ICON_DIR__}"
GETCFG="${QPKG_GETCFG:-/sbin/getcfg}"
SETCFG="${QPKG_SETCFG:-/sbin/setcfg}"

fail() {
    echo "ERROR: [install] $1" >&2
    exit 1
}

[ -f ./qpkg.cfg ] || fail "qpkg.cfg not found in package"
. ./qpkg.cfg
[ -n "$QPKG_NAME" ] || fail "qpkg.cfg has no QPKG_NAME"

if [ -n "$QPKG_ARCH" ] && [ "$QPKG_ARCH" != "all" ]; then
    case "$(uname -m)" in
        x86_64) host_arch=amd64 ;;
        aarch64) host_arch=arm64 ;;
        armv7l) host_arch=armhf ;;
        i?86) host_arch=i386 ;;
        *) host_arch=$(uname -m) ;;
    esac
    if [ "$host_arch" != "$QPKG_ARCH" ] && [ -z "$QPKG_FORCE" ]; then
        fail "package is built for $QPKG_ARCH but this host is $host_arch"
    fi
fi

PUBLIC_SHARE=$("$GETCFG" Public path -f "$SMB_CONF" 2>/dev/null)
if [ -n "$PUBLIC_SHARE" ]; then
    VOLUME=$(dirname "$PUBLIC_SHARE")
else
    VOLUME="__DEFAULT_VOLUME__"
fi
QPKG_ROOT="${VOLUME}/.qpkg/${QPKG_NAME}"
QPKG_CONF="$CONF"
export QPKG_NAME QPKG_ROOT QPKG_CONF

[ -f ./package_routines ] && . ./package_routines

if type pkg_pre_install >/dev/null 2>&1; then
    pkg_pre_install || fail "pre_install hook failed"
fi

INCOMING="${QPKG_ROOT}.incoming"
BACKUP="${QPKG_ROOT}.previous"
rm -rf "$INCOMING" "$BACKUP"
mkdir -p "$INCOMING" || fail "cannot create $INCOMING"
if [ -d "$QPKG_ROOT" ]; then
    cp -af "$QPKG_ROOT/." "$INCOMING/" || { rm -rf "$INCOMING"; fail "cannot copy previous install"; }
fi
if [ -d data ]; then
    cp -af data/. "$INCOMING/" || { rm -rf "$INCOMING"; fail "payload copy failed"; }
fi
if [ -d "$QPKG_ROOT" ]; then
    mv "$QPKG_ROOT" "$BACKUP" || { rm -rf "$INCOMING"; fail "cannot move previous install aside"; }
fi
if ! mv "$INCOMING" "$QPKG_ROOT"; then
    [ -d "$BACKUP" ] && mv "$BACKUP" "$QPKG_ROOT"
    fail "cannot move payload into $QPKG_ROOT"
fi

rollback() {
    rm -rf "$QPKG_ROOT"
    [ -d "$BACKUP" ] && mv "$BACKUP" "$QPKG_ROOT"
    fail "$1"
}

if type pkg_install >/dev/null 2>&1; then
    pkg_install || rollback "install hook failed"
fi

# rebuild the package section on a copy that replaces the registry at the end
NEW_CONF="${CONF}.incoming"
mkdir -p "$(dirname "$CONF")" || rollback "cannot create $(dirname "$CONF")"
if [ -f "$CONF" ]; then
    awk -v section="[$QPKG_NAME]" '/^\[/ { skip = ($1 == section) } !skip' "$CONF" > "$NEW_CONF" \
        || { rm -f "$NEW_CONF"; rollback "cannot copy $CONF"; }
else
    : > "$NEW_CONF" || rollback "cannot write $NEW_CONF"
fi

register() {
    [ -n "$2" ] || return 0
    "$SETCFG" "$QPKG_NAME" "$1" "$2" -f "$NEW_CONF" || { rm -f "$NEW_CONF"; rollback "registry update failed: $1"; }
}

register Name "$QPKG_NAME"
register Install_Path "$QPKG_ROOT"
register Enable "TRUE"
register Display_Name "$QPKG_DISPLAY_NAME"
register Version "$QPKG_VER"
[ -n "$QPKG_SERVICE_PROGRAM" ] && register Shell "$QPKG_ROOT/$QPKG_SERVICE_PROGRAM"
register Service_Port "$QPKG_SERVICE_PORT"
register RC_Number "$QPKG_RC_NUM"
register Web_URL "$QPKG_WEBUI"
register Web_Port "$QPKG_WEB_PORT"
mv -f "$NEW_CONF" "$CONF" || { rm -f "$NEW_CONF"; rollback "cannot replace $CONF"; }
rm -rf "$BACKUP"

if [ -d "$QPKG_ROOT/__ICON_SUBDIR__" ]; then
    mkdir -p "$ICON_DIR"
    cp "$QPKG_ROOT/__ICON_SUBDIR__"/* "$ICON_DIR/" 2>/dev/null
fi

if type pkg_post_install >/dev/null 2>&1; then
    pkg_post_install || echo "WARNING: post_install hook returned non-zero" >&2
fi

echo "${QPKG_NAME} installed to ${QPKG_ROOT}"
exit 0
"""


def render_qinstall() -> str:
    """Render the on-device installer run by the container preamble."""
    text = QINSTALL_TEMPLATE
    for token, value in (
        ("__QPKG_CONF__", QPKG_CONF),
        ("__SMB_CONF__", SMB_CONF),
        ("__DEFAULT_VOLUME__", DEFAULT_VOLUME),
        ("__ICON_SUBDIR__", ICON_SUBDIR),
        ("__ICON_DIR__", ICON_DIR),
    ):
        text = text.replace(token, value)
    return text
