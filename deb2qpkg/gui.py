#!/usr/bin/env python3
"""GTK front end for deb2qpkg."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

import gi

from .assembler import QpkgAssembler
from .config import DEFAULT_PORT
from .descriptor import PackageDescriptor
from .resolver import (
    ForeignPackageResolver,
    ResolvedPackage,
    descriptor_from_metadata,
    preselected_executable,
    select_executable,
)
from .utils import Deb2QpkgError, sanitize_package_name

gi.require_version("Gdk", "3.0")
gi.require_version("Gtk", "3.0")
from gi.repository import Gdk, GLib, Gtk  # noqa: E402

CSS = b"""
window {
    background: #14181d;
    color: #e6ebf0;
}
.title {
    font-size: 20px;
    font-weight: 700;
}
button {
    background-image: none;
    background: #23303c;
    color: #e6ebf0;
    border: 1px solid #3b4c5e;
    border-radius: 6px;
    padding: 6px 12px;
}
textview, textview text, entry {
    background: #0e1216;
    color: #d0d8e2;
}
"""


class LogPanel(Gtk.Box):
    """Status line with a spinner above a scrolling, read-only build log."""

    def __init__(self) -> None:
        super().__init__(orientation=Gtk.Orientation.VERTICAL, spacing=6)

        header = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        self.spinner = Gtk.Spinner()
        self.status = Gtk.Label(label="Idle", xalign=0)
        header.pack_start(self.spinner, False, False, 0)
        header.pack_start(self.status, True, True, 0)
        self.pack_start(header, False, False, 0)

        self.buffer = Gtk.TextBuffer()
        self.view = Gtk.TextView(buffer=self.buffer, editable=False, monospace=True, wrap_mode=Gtk.WrapMode.WORD_CHAR)
        scroller = Gtk.ScrolledWindow(hscrollbar_policy=Gtk.PolicyType.AUTOMATIC, vscrollbar_policy=Gtk.PolicyType.AUTOMATIC)
        scroller.add(self.view)
        self.pack_start(scroller, True, True, 0)

    def append(self, line: str) -> None:
        end = self.buffer.get_end_iter()
        self.buffer.insert(end, line + "\n")
        self.view.scroll_to_mark(self.buffer.create_mark(None, self.buffer.get_end_iter(), False), 0.0, True, 0.0, 1.0)

    def show_status(self, busy: bool, text: str) -> None:
        self.status.set_text(text)
        if busy:
            self.spinner.start()
        else:
            self.spinner.stop()


class BuilderWindow(Gtk.Window):
    """Pick a package or binary, adjust the descriptor and build a QPKG."""

    def __init__(self, source: Optional[Path], logger: Optional[logging.Logger] = None) -> None:
        super().__init__(title="deb2qpkg")
        self.set_default_size(820, 600)
        self.set_border_width(14)

        self.logger = logger or logging.getLogger("deb2qpkg.gui")
        self.resolver = ForeignPackageResolver(self.logger.getChild("resolver"))
        self.assembler = QpkgAssembler(self.logger.getChild("assembler"))

        self.source: Optional[Path] = None
        self.resolved: Optional[ResolvedPackage] = None
        self._busy = False

        self._apply_theme()
        self._build_ui()
        self.connect("destroy", self._on_destroy)

        if source:
            self._load_source_async(source)

    def _apply_theme(self) -> None:
        provider = Gtk.CssProvider()
        provider.load_from_data(CSS)
        screen = Gdk.Screen.get_default()
        if screen:
            Gtk.StyleContext.add_provider_for_screen(screen, provider, Gtk.STYLE_PROVIDER_PRIORITY_APPLICATION)

    def _build_ui(self) -> None:
        root = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=10)
        self.add(root)

        title = Gtk.Label(label="QPKG Builder")
        title.get_style_context().add_class("title")
        title.set_halign(Gtk.Align.START)
        root.pack_start(title, False, False, 0)

        grid = Gtk.Grid(column_spacing=10, row_spacing=6)
        root.pack_start(grid, False, False, 0)

        self.path_entry = Gtk.Entry()
        self.path_entry.set_editable(False)
        self.path_entry.set_placeholder_text("No package or binary selected")
        self.path_entry.set_hexpand(True)

        self.binary_combo = Gtk.ComboBoxText()
        self.binary_combo.connect("changed", self._on_binary_changed)
        self.name_entry = Gtk.Entry()
        self.display_entry = Gtk.Entry()
        self.version_entry = Gtk.Entry()
        self.arch_value = Gtk.Label(label="-")
        self.arch_value.set_xalign(0)

        service_box = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        self.service_check = Gtk.CheckButton(label="Run as service")
        self.port_entry = Gtk.Entry()
        self.port_entry.set_text(str(DEFAULT_PORT))
        self.port_entry.set_width_chars(6)
        self.script_button = Gtk.FileChooserButton(title="Service script", action=Gtk.FileChooserAction.OPEN)
        service_box.pack_start(self.service_check, False, False, 0)
        service_box.pack_start(Gtk.Label(label="Port"), False, False, 0)
        service_box.pack_start(self.port_entry, False, False, 0)
        service_box.pack_start(self.script_button, True, True, 0)

        self.output_button = Gtk.FileChooserButton(
            title="Output directory", action=Gtk.FileChooserAction.SELECT_FOLDER
        )

        rows = [
            ("Source", self.path_entry),
            ("Executable", self.binary_combo),
            ("Name", self.name_entry),
            ("Display name", self.display_entry),
            ("Version", self.version_entry),
            ("Architecture", self.arch_value),
            ("Service", service_box),
            ("Output directory", self.output_button),
        ]
        for row, (name, widget) in enumerate(rows):
            label = Gtk.Label(label=name)
            label.set_xalign(0)
            grid.attach(label, 0, row, 1, 1)
            grid.attach(widget, 1, row, 1, 1)

        self.log_panel = LogPanel()
        root.pack_start(self.log_panel, True, True, 0)

        actions = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=8)
        root.pack_start(actions, False, False, 0)

        open_button = Gtk.Button(label="Open...")
        open_button.connect("clicked", self._on_open_clicked)
        actions.pack_start(open_button, False, False, 0)

        self.build_button = Gtk.Button(label="Build QPKG")
        self.build_button.connect("clicked", self._on_build_clicked)
        self.build_button.set_sensitive(False)
        actions.pack_start(self.build_button, False, False, 0)

        close_button = Gtk.Button(label="Close")
        close_button.connect("clicked", lambda _button: self.destroy())
        actions.pack_end(close_button, False, False, 0)

    def _on_open_clicked(self, _button: Gtk.Button) -> None:
        dialog = Gtk.FileChooserDialog(title="Select package or binary", parent=self, action=Gtk.FileChooserAction.OPEN)
        dialog.add_buttons(Gtk.STOCK_CANCEL, Gtk.ResponseType.CANCEL, Gtk.STOCK_OPEN, Gtk.ResponseType.OK)
        response = dialog.run()
        selected = dialog.get_filename() if response == Gtk.ResponseType.OK else None
        dialog.destroy()
        if selected:
            self._load_source_async(Path(selected))

    def _release_workspace(self) -> None:
        if self.resolved is not None:
            self.resolver.cleanup_workspace(self.resolved.temp_dir)
            self.resolved = None

    def _load_source_async(self, source: Path) -> None:
        if self._busy:
            return

        self._release_workspace()
        self.source = source.expanduser().resolve()
        self.path_entry.set_text(str(self.source))
        self.output_button.set_filename(str(self.source.parent))
        self._append_log(f"Loaded file: {self.source}")
        self._set_busy(True, "Reading package...")

        def worker() -> None:
            try:
                if self.resolver.is_foreign_package(self.source):
                    resolved = self.resolver.resolve(self.source, log_callback=self._log_from_worker)
                    GLib.idle_add(self._show_resolved, resolved)
                else:
                    GLib.idle_add(self._show_binary, self.source)
            except Deb2QpkgError as exc:
                GLib.idle_add(self.build_button.set_sensitive, False)
                GLib.idle_add(self._show_error_dialog, "Unsupported package", str(exc))
                GLib.idle_add(self._append_log, f"Read failed: {exc}")
            finally:
                GLib.idle_add(self._set_busy, False, "Idle")

        threading.Thread(target=worker, daemon=True).start()

    def _show_resolved(self, resolved: ResolvedPackage) -> None:
        self.resolved = resolved
        metadata = resolved.metadata
        self.binary_combo.remove_all()
        for candidate in resolved.candidates:
            self.binary_combo.append_text(candidate)
        preselected = preselected_executable(resolved.candidates)
        if preselected is not None:
            self.binary_combo.set_active(0)
            self._append_log(f"Found executable: {preselected}")
        else:
            self.binary_combo.set_active(-1)
            if resolved.candidates:
                self._append_log(f"{len(resolved.candidates)} executables found, choose one before building")
        self.name_entry.set_text(sanitize_package_name(metadata.package) if metadata.package else "")
        self.display_entry.set_text(metadata.package)
        self.version_entry.set_text(metadata.version)
        self.arch_value.set_text(metadata.architecture or "-")
        for warning in resolved.warnings:
            self._append_log(f"WARNING: {warning}")
        self.build_button.set_sensitive(preselected is not None)

    def _on_binary_changed(self, combo: Gtk.ComboBoxText) -> None:
        self.build_button.set_sensitive(not self._busy and combo.get_active_text() is not None)

    def _show_binary(self, binary: Path) -> None:
        self.binary_combo.remove_all()
        self.binary_combo.append_text(binary.name)
        self.binary_combo.set_active(0)
        self.name_entry.set_text(sanitize_package_name(binary.stem))
        self.display_entry.set_text(binary.stem)
        self.version_entry.set_text("")
        self.arch_value.set_text("-")
        self.build_button.set_sensitive(True)

    def _collect_descriptor(self) -> PackageDescriptor:
        service = self.service_check.get_active()
        overrides = {
            "name": self.name_entry.get_text().strip() or None,
            "display_name": self.display_entry.get_text().strip() or None,
            "version": self.version_entry.get_text().strip() or None,
            "service": service,
            "service_port": int(self.port_entry.get_text()) if service and self.port_entry.get_text().isdigit() else None,
        }
        if self.resolved is not None:
            return descriptor_from_metadata(self.resolved.metadata, **overrides)
        applied = {key: value for key, value in overrides.items() if value is not None}
        applied.setdefault("name", sanitize_package_name(self.source.stem))
        return PackageDescriptor(**applied)

    def _on_build_clicked(self, _button: Gtk.Button) -> None:
        if self._busy or self.source is None:
            return

        try:
            descriptor = self._collect_descriptor()
        except Deb2QpkgError as exc:
            self._show_error_dialog("Invalid package details", str(exc))
            return

        selected = self.binary_combo.get_active_text()
        if self.resolved is not None:
            try:
                selected = select_executable(self.resolved.candidates, selected)
            except Deb2QpkgError as exc:
                self._show_error_dialog("Choose an executable", str(exc))
                return
        payload = self.resolved.path_of(selected) if self.resolved is not None else self.source
        script = self.script_button.get_filename()
        output_dir = Path(self.output_button.get_filename() or self.source.parent)

        self.build_button.set_sensitive(False)
        self._set_busy(True, "Building QPKG...")

        def worker() -> None:
            try:
                result = self.assembler.assemble(
                    descriptor,
                    payload,
                    output_dir,
                    binary_name=Path(selected).name if selected else None,
                    service_script=Path(script) if script and descriptor.service else None,
                    log_callback=self._log_from_worker,
                )
                GLib.idle_add(self._show_info_dialog, "Build complete", f"Created {result.output_path}")
            except Deb2QpkgError as exc:
                GLib.idle_add(self._show_error_dialog, "Build failed", str(exc))
                GLib.idle_add(self._append_log, f"Error: {exc}")
            finally:
                GLib.idle_add(self._set_busy, False, "Idle")
                GLib.idle_add(self.build_button.set_sensitive, True)

        threading.Thread(target=worker, daemon=True).start()

    def _on_destroy(self, _window: Gtk.Window) -> None:
        self._release_workspace()
        Gtk.main_quit()

    def _show_error_dialog(self, title: str, details: str) -> None:
        self._show_dialog(Gtk.MessageType.ERROR, title, details)

    def _show_info_dialog(self, title: str, details: str) -> None:
        self._show_dialog(Gtk.MessageType.INFO, title, details)

    def _show_dialog(self, message_type: Gtk.MessageType, title: str, details: str) -> None:
        dialog = Gtk.MessageDialog(
            parent=self,
            flags=Gtk.DialogFlags.MODAL,
            message_type=message_type,
            buttons=Gtk.ButtonsType.CLOSE,
            text=title,
        )
        dialog.format_secondary_text(details)
        dialog.run()
        dialog.destroy()

    def _append_log(self, line: str) -> None:
        self.log_panel.append(line)

    def _log_from_worker(self, line: str) -> None:
        GLib.idle_add(self._append_log, line)

    def _set_busy(self, busy: bool, status: str) -> None:
        self._busy = busy
        self.log_panel.show_status(busy, status)


def launch_gui(source: Optional[Path], logger: Optional[logging.Logger] = None) -> int:
    """Launch GTK interface."""
    win = BuilderWindow(source=source, logger=logger)
    win.show_all()
    Gtk.main()
    return 0
