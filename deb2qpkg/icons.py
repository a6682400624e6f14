#!/usr/bin/env python3
"""App Center icons staged under ``.qpkg_icon`` in the payload."""

from __future__ import annotations

import logging
import shutil
import struct
import zlib
from pathlib import Path
from typing import Optional

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
ICON_COLOR = (101, 155, 72)
GRAY_COLOR = (128, 128, 128)


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    body = kind + data
    return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)


def solid_png(width: int, height: int, rgb: tuple[int, int, int]) -> bytes:
    """Encode a single-colour RGB PNG."""
    row = b"\x00" + bytes(rgb) * width
    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        PNG_SIGNATURE
        + _png_chunk(b"IHDR", header)
        + _png_chunk(b"IDAT", zlib.compress(row * height, 9))
        + _png_chunk(b"IEND", b"")
    )


def write_placeholder_icons(icon_dir: Path, name: str) -> list[Path]:
    """Write the three icon variants App Center expects for ``name``."""
    icon_dir.mkdir(parents=True, exist_ok=True)
    variants = (
        (f"{name}.png", 64, ICON_COLOR),
        (f"{name}_gray.png", 64, GRAY_COLOR),
        (f"{name}_80.png", 80, ICON_COLOR),
    )
    written = []
    for filename, size, color in variants:
        target = icon_dir / filename
        target.write_bytes(solid_png(size, size, color))
        written.append(target)
    return written


def stage_icons(
    icon_dir: Path,
    name: str,
    user_icon: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
) -> list[Path]:
    """Stage a user icon (plus derived variants) or placeholder icons.

    A PNG user icon becomes the main icon and the gray/80px variants are
    generated placeholders; any other format is copied for all variants.
    """
    if user_icon is None:
        return write_placeholder_icons(icon_dir, name)

    if not user_icon.is_file():
        if logger:
            logger.warning("Icon not found, using placeholders: %s", user_icon)
        return write_placeholder_icons(icon_dir, name)

    icon_dir.mkdir(parents=True, exist_ok=True)
    with user_icon.open("rb") as handle:
        is_png = handle.read(8) == PNG_SIGNATURE

    if is_png:
        main = icon_dir / f"{name}.png"
        shutil.copyfile(user_icon, main)
        gray = icon_dir / f"{name}_gray.png"
        gray.write_bytes(solid_png(64, 64, GRAY_COLOR))
        large = icon_dir / f"{name}_80.png"
        large.write_bytes(solid_png(80, 80, ICON_COLOR))
        return [main, gray, large]

    suffix = user_icon.suffix.lower() or ".gif"
    written = []
    for filename in (f"{name}{suffix}", f"{name}_gray{suffix}", f"{name}_80{suffix}"):
        target = icon_dir / filename
        shutil.copyfile(user_icon, target)
        written.append(target)
    return written
