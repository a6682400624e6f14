#!/usr/bin/env python3
"""Entry point for deb2qpkg."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import __version__
from .assembler import QpkgAssembler
from .config import (
    DEFAULT_PORT,
    LICENSE_CHOICES,
    PROJECT_CONFIG_NAME,
    ProjectConfig,
    load_project_config,
    save_project_config,
)
from .descriptor import PackageDescriptor
from .resolver import (
    MAX_LISTED_CANDIDATES,
    ForeignMetadata,
    ForeignPackageResolver,
    ResolvedPackage,
    descriptor_from_metadata,
    select_executable,
)
from .runtime import HostLayout, QpkgInstaller
from .utils import (
    AmbiguousExecutableError,
    Deb2QpkgError,
    ValidationError,
    cleanup_dir,
    create_temp_dir,
    fetch_url,
    is_remote_source,
    sanitize_package_name,
    setup_logging,
    url_basename,
)

EXIT_OK = 0
EXIT_CANCELLED = 1
EXIT_ERROR = 2


class Cancelled(Exception):
    """Raised when the user declines a prompt or closes stdin."""


@dataclass
class BuildSource:
    """Local view of a build source plus the temp dirs that back it."""

    path: Path
    resolved: Optional[ResolvedPackage] = None
    workspaces: list[Path] = field(default_factory=list)


def _ask(prompt: str) -> str:
    try:
        return input(prompt).strip()
    except (EOFError, KeyboardInterrupt) as exc:
        print()
        raise Cancelled() from exc


def _confirm(prompt: str) -> bool:
    return _ask(f"{prompt} [y/N]: ").lower() in {"y", "yes"}


def _print_metadata(metadata: ForeignMetadata) -> None:
    print(f"Package: {metadata.package or '(unknown)'}")
    print(f"Version: {metadata.version or '(unknown)'}")
    print(f"Architecture: {metadata.architecture or '(unknown)'}")
    print(f"Maintainer: {metadata.maintainer or '(unknown)'}")
    if metadata.summary:
        print(f"Summary: {metadata.summary}")


def _print_descriptor(descriptor: PackageDescriptor, payload: Path) -> None:
    print(f"Name: {descriptor.name}")
    print(f"Display name: {descriptor.display_name}")
    print(f"Version: {descriptor.version}")
    print(f"Author: {descriptor.author}")
    print(f"License: {descriptor.license}")
    print(f"Architecture: {descriptor.architecture}")
    print(f"Payload: {payload}")
    if descriptor.service:
        print(f"Service: yes (port {descriptor.service_port}, run as {descriptor.run_as_user})")
        if descriptor.webui_path is not None:
            print(f"Web UI: {descriptor.webui_path}")
    else:
        print("Service: no")


def _prompt_executable(candidates: tuple[str, ...]) -> str:
    """List the first candidates and accept a number or any candidate path."""
    print(f"Found {len(candidates)} executables:")
    for index, candidate in enumerate(candidates[:MAX_LISTED_CANDIDATES], start=1):
        print(f"  {index}) {candidate}")
    hidden = len(candidates) - MAX_LISTED_CANDIDATES
    if hidden > 0:
        print(f"  ... and {hidden} more (type the path of any of them)")

    answer = _ask("Select executable [number or path]: ")
    if not answer:
        raise Cancelled()
    return select_executable(candidates, answer)


def _open_source(source: str, resolver: ForeignPackageResolver, logger: logging.Logger) -> BuildSource:
    """Fetch a remote source if needed and unpack foreign packages."""
    build_source = BuildSource(path=Path(source).expanduser())
    try:
        if is_remote_source(source):
            fetch_dir = create_temp_dir("deb2qpkg-fetch-")
            build_source.workspaces.append(fetch_dir)
            build_source.path = fetch_url(
                source,
                fetch_dir / url_basename(source),
                logger,
                log_callback=lambda line: print(line),
            )

        if resolver.is_foreign_package(build_source.path):
            resolved = resolver.resolve(build_source.path, log_callback=lambda line: print(line))
            build_source.resolved = resolved
            build_source.workspaces.append(resolved.temp_dir)
        elif not build_source.path.is_file():
            raise ValidationError(f"File does not exist: {build_source.path}")
    except Exception:
        for workspace in build_source.workspaces:
            cleanup_dir(workspace, logger)
        raise
    return build_source


def _extra_files(extras: Optional[list[str]]) -> dict[str, Path]:
    """Map ``--extra`` files to their staged names, one per base name."""
    staged: dict[str, Path] = {}
    for extra in extras or []:
        path = Path(extra).expanduser()
        if path.name in staged:
            raise ValidationError(f"--extra files share the name {path.name!r}: {staged[path.name]} and {path}")
        staged[path.name] = path
    return staged


def _descriptor_overrides(args: argparse.Namespace) -> dict[str, object]:
    return {
        "name": args.name,
        "display_name": args.display_name,
        "version": args.version,
        "summary": args.summary,
        "author": args.author,
        "license": args.license,
        "service": args.service,
        "service_port": args.port,
        "service_args": args.args,
        "run_as_user": args.run_as,
        "webui_path": args.webui,
        "boot_order": args.boot_order,
    }


def build_descriptor(
    args: argparse.Namespace,
    payload: Path,
    metadata: Optional[ForeignMetadata] = None,
    project: Optional[ProjectConfig] = None,
) -> PackageDescriptor:
    """Combine saved project, foreign metadata and CLI flags; flags win."""
    overrides = _descriptor_overrides(args)

    if project is not None:
        descriptor = PackageDescriptor.from_cfg_fields(project.fields).with_overrides(**overrides)
    elif metadata is not None:
        descriptor = descriptor_from_metadata(metadata, **overrides)
    else:
        applied = {key: value for key, value in overrides.items() if value is not None}
        applied.setdefault("name", sanitize_package_name(payload.stem))
        descriptor = PackageDescriptor(**applied)

    if descriptor.service and descriptor.service_port is None:
        descriptor = descriptor.with_overrides(service_port=DEFAULT_PORT)
    return descriptor


def run_inspect(source: str, logger: logging.Logger) -> int:
    """Print metadata and executable candidates of a foreign package."""
    resolver = ForeignPackageResolver(logger.getChild("resolver"))
    build_source = _open_source(source, resolver, logger)
    try:
        resolved = build_source.resolved
        if resolved is None:
            print(f"{build_source.path} is not a foreign package; it would be packaged as-is.")
            return EXIT_OK

        _print_metadata(resolved.metadata)
        print(f"Extraction backend: {'dpkg-deb' if resolved.used_dpkg_deb else 'manual fallback'}")
        print(f"Candidate executables ({len(resolved.candidates)}):")
        for candidate in resolved.candidates:
            print(f"  {candidate}")
        for warning in resolved.warnings:
            print(f"WARNING: {warning}")
        return EXIT_OK
    finally:
        for workspace in build_source.workspaces:
            cleanup_dir(workspace, logger)


def run_build(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Resolve the source, confirm the descriptor and assemble a container."""
    project = load_project_config(Path(args.config)) if args.config else None

    source = args.source
    if source is None and project is not None and project.binary_path is not None:
        source = str(project.binary_path)
    if source is None:
        raise ValidationError("A source package, binary or URL is required")

    binary_choice = args.binary or (project.binary_choice if project else None)
    service_script = args.service_script or (project.service_script if project else None)
    icon = args.icon or (project.icon_path if project else None)

    resolver = ForeignPackageResolver(logger.getChild("resolver"))
    assembler = QpkgAssembler(logger.getChild("assembler"))

    print(f"Inspecting: {source}")
    build_source = _open_source(source, resolver, logger)
    try:
        resolved = build_source.resolved
        metadata = None
        if resolved is not None:
            metadata = resolved.metadata
            _print_metadata(metadata)
            try:
                selected = select_executable(resolved.candidates, binary_choice, logger.getChild("resolver"))
            except AmbiguousExecutableError as exc:
                if args.no_input:
                    for candidate in exc.candidates:
                        print(f"  {candidate}")
                    raise
                selected = _prompt_executable(exc.candidates)
            payload = resolved.path_of(selected)
        else:
            selected = None
            payload = build_source.path

        aux_files = _extra_files(args.extra)
        descriptor = build_descriptor(args, payload, metadata, project)
        print()
        _print_descriptor(descriptor, payload)

        if not (args.yes or args.no_input) and not _confirm("Proceed with build?"):
            print("Cancelled.")
            return EXIT_CANCELLED

        result = assembler.assemble(
            descriptor,
            payload,
            Path(args.output_dir),
            binary_name=Path(selected).name if selected else None,
            service_script=Path(service_script).expanduser() if service_script else None,
            aux_files=aux_files,
            icon=Path(icon).expanduser() if icon else None,
            log_callback=lambda line: print(line),
        )
        print(f"Generated package: {result.output_path}")

        if args.save_config:
            local_source = None if is_remote_source(source) else Path(source).expanduser().resolve()
            project_out = ProjectConfig(
                fields=descriptor.to_cfg_fields(),
                binary_path=local_source,
                icon_path=Path(icon).expanduser().resolve() if icon else None,
                service_script=Path(service_script).expanduser().resolve() if service_script else None,
                binary_choice=selected,
            )
            saved = save_project_config(Path(args.save_config), project_out)
            print(f"Saved project: {saved}")
        return EXIT_OK
    finally:
        for workspace in build_source.workspaces:
            cleanup_dir(workspace, logger)


def run_install(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Install a container into the host layout given by the flags."""
    layout = HostLayout()
    if args.conf:
        layout.conf_path = Path(args.conf).expanduser()
    if args.smb_conf:
        layout.smb_conf = Path(args.smb_conf).expanduser()
    if args.volume:
        layout.volume = Path(args.volume).expanduser()
    if args.icon_dir:
        layout.icon_dir = Path(args.icon_dir).expanduser()

    installer = QpkgInstaller(layout, logger.getChild("runtime"))
    result = installer.install(Path(args.package), force=args.force, log_callback=lambda line: print(line))
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    print(f"Installed {result.name} to {result.install_path}")
    return EXIT_OK


def run_gui(source: Optional[str], logger: logging.Logger) -> int:
    """Run GTK mode."""
    try:
        from .gui import launch_gui
    except Exception as exc:  # pragma: no cover - runtime dependency branch
        print(f"GUI dependencies unavailable: {exc}", file=sys.stderr)
        if source is None:
            return EXIT_ERROR
        print("Falling back to inspect mode.")
        return run_inspect(source, logger)

    return launch_gui(Path(source).expanduser() if source else None, logger=logger.getChild("gui"))


def build_parser() -> argparse.ArgumentParser:
    """Build command-line parser."""
    parser = argparse.ArgumentParser(
        prog="deb2qpkg",
        description="Turn an executable, .deb or tarball into a self-installing QNAP QPKG.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    inspect_parser = subparsers.add_parser("inspect", help="Show metadata and executables of a package")
    inspect_parser.add_argument("source", help="Path or URL to a .deb, .tar.gz or .tgz package")

    build = subparsers.add_parser("build", help="Build a QPKG container")
    build.add_argument("source", nargs="?", help="Path or URL to a .deb, tarball or executable")
    build.add_argument("--binary", help="Executable to package (path inside the package or list number)")
    build.add_argument("--name", help="Package identifier (letters, digits, - and _)")
    build.add_argument("--display-name", help="Name shown in App Center")
    build.add_argument("--version", help="Package version")
    build.add_argument("--summary", help="One-line description")
    build.add_argument("--author", help="Package author")
    build.add_argument("--license", choices=LICENSE_CHOICES, help="License tag")
    build.add_argument("--service", action="store_true", default=None, help="Package runs as a service")
    build.add_argument("--port", type=int, help=f"Service port (default {DEFAULT_PORT})")
    build.add_argument("--args", help="Arguments passed to the service binary")
    build.add_argument("--run-as", help="User the service runs as")
    build.add_argument("--service-script", help="Service control script staged as <NAME>.sh")
    build.add_argument("--webui", help="Web UI path, e.g. /")
    build.add_argument("--boot-order", type=int, help="Service boot order number")
    build.add_argument("--icon", help="Icon file (PNG or GIF)")
    build.add_argument("--extra", action="append", help="Additional file for the payload (repeatable)")
    build.add_argument("--output-dir", default=".", help="Directory for the .qpkg file")
    build.add_argument("--config", help="Load a saved project file")
    build.add_argument(
        "--save-config",
        nargs="?",
        const=PROJECT_CONFIG_NAME,
        help=f"Save the project after building (default file {PROJECT_CONFIG_NAME})",
    )
    build.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    build.add_argument("--no-input", action="store_true", help="Never prompt; fail instead")

    install = subparsers.add_parser("install", help="Install a QPKG container on this host")
    install.add_argument("package", help="Path to a .qpkg file")
    install.add_argument("--conf", help="Registry file (default /etc/config/qpkg.conf)")
    install.add_argument("--smb-conf", help="Samba config used to find the data volume")
    install.add_argument("--volume", help="Data volume holding .qpkg/")
    install.add_argument("--icon-dir", help="App Center icon directory")
    install.add_argument("--force", action="store_true", help="Install despite an architecture mismatch")

    gui = subparsers.add_parser("gui", help="Open the GTK front end")
    gui.add_argument("source", nargs="?", help="Package to open")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Program entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = setup_logging("deb2qpkg", logging.DEBUG if args.verbose else logging.INFO)

    try:
        if args.command == "inspect":
            return run_inspect(args.source, logger)
        if args.command == "build":
            return run_build(args, logger)
        if args.command == "install":
            return run_install(args, logger)
        return run_gui(getattr(args, "source", None), logger)
    except Cancelled:
        print("Cancelled.")
        return EXIT_CANCELLED
    except Deb2QpkgError as exc:
        logger.error("Operation failed: %s", exc)
        print(f"Error: {exc}")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
