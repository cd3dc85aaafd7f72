"""Media library catalog: opaque ids, path safety, indexing and browsing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import base64
import binascii
import logging
import os
import pathlib
import re
import time

from cache import get_cache, get_cache_lock


log = logging.getLogger(__name__)

_CATALOG_KEY = "catalog"
_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True, slots=True)
class VideoAsset:
    id: str
    name: str
    rel_path: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": display_name(self.name),
            "relativePath": display_name(self.rel_path),
        }


# ===========================================================================
# Opaque IDs
# ===========================================================================

# Filenames that are not valid UTF-8 arrive from os.walk/os.scandir with
# surrogate escapes; ids carry the raw bytes so they still resolve.
_FS_ERRORS = "surrogateescape"


def display_name(text: str) -> str:
    """Printable form of a filesystem name (undecodable bytes become U+FFFD)."""
    return text.encode("utf-8", _FS_ERRORS).decode("utf-8", "replace")


def encode_id(rel_path: str) -> str:
    """Encode a library-relative path as an unpadded URL-safe base64 id."""
    raw = rel_path.encode("utf-8", _FS_ERRORS)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_id(asset_id: str) -> str | None:
    """Decode an id back to its relative path. Returns None if malformed.

    Only the canonical encoding of a path is accepted, so each path has
    exactly one id (and one cache directory).
    """
    if not asset_id or not _ID_RE.match(asset_id):
        return None
    try:
        raw = base64.urlsafe_b64decode(asset_id + "=" * (-len(asset_id) % 4))
        rel_path = raw.decode("utf-8", _FS_ERRORS)
    except (binascii.Error, ValueError):
        return None
    if not rel_path or "\x00" in rel_path or encode_id(rel_path) != asset_id:
        return None
    return rel_path


def resolve_library_path(rel_path: str, root: str | pathlib.Path) -> pathlib.Path | None:
    """Join rel_path onto root. Returns None if the result escapes root."""
    root = pathlib.Path(root)
    rel_path = rel_path.replace("\\", "/")
    # os.path.join discards root for absolute rel_path, which the check below rejects
    candidate = pathlib.Path(os.path.normpath(os.path.join(root, rel_path)))
    if not candidate.is_relative_to(root):
        return None
    return candidate


def _to_rel(path: pathlib.Path, root: pathlib.Path) -> str:
    return path.relative_to(root).as_posix()


# ===========================================================================
# Index
# ===========================================================================


def _is_media(name: str, extensions: set[str]) -> bool:
    return os.path.splitext(name)[1].lower() in extensions


def scan_library(root: str | pathlib.Path, extensions: list[str]) -> list[VideoAsset]:
    """Walk root recursively, skipping directories that cannot be read."""
    root = pathlib.Path(root)
    exts = {e.lower() for e in extensions}

    def on_error(e: OSError) -> None:
        log.debug("Skipping unreadable directory %s: %s", e.filename, e.strerror)

    assets = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames.sort(key=str.casefold)
        for name in sorted(filenames, key=str.casefold):
            if not _is_media(name, exts):
                continue
            rel_path = _to_rel(pathlib.Path(dirpath) / name, root)
            assets.append(VideoAsset(id=encode_id(rel_path), name=name, rel_path=rel_path))
    return assets


def get_catalog(settings: dict[str, Any], force: bool = False) -> list[VideoAsset]:
    """Return the cached library listing, rebuilding it once the TTL expires."""
    cache = get_cache()
    ttl = float(settings.get("catalog_ttl_secs", 20))
    with get_cache_lock():
        cached = cache.get(_CATALOG_KEY)
    if cached and not force:
        built_at, assets = cached
        if time.monotonic() - built_at < ttl:
            return assets

    started = time.monotonic()
    assets = scan_library(settings["library_root"], settings["media_extensions"])
    log.info(
        "Indexed %d media files under %s in %.2fs",
        len(assets),
        settings["library_root"],
        time.monotonic() - started,
    )
    with get_cache_lock():
        cache[_CATALOG_KEY] = (time.monotonic(), assets)
    return assets


def search_catalog(settings: dict[str, Any], query: str = "") -> list[VideoAsset]:
    """Case-insensitive substring search over name and relative path, capped."""
    assets = get_catalog(settings)
    limit = int(settings.get("catalog_limit", 300))
    q = query.strip().lower()
    if q:
        assets = [a for a in assets if q in f"{a.name} {a.rel_path}".lower()]
    return assets[:limit]


# ===========================================================================
# Browse
# ===========================================================================


def list_directory(
    rel_dir: str,
    root: str | pathlib.Path,
    extensions: list[str],
) -> dict[str, Any]:
    """Non-recursive listing of subfolders and media files under rel_dir.

    Raises PermissionError if rel_dir escapes root, FileNotFoundError if it
    is not an existing directory.
    """
    root = pathlib.Path(root)
    rel_dir = rel_dir.replace("\\", "/").lstrip("/")
    abs_dir = resolve_library_path(rel_dir, root)
    if abs_dir is None:
        raise PermissionError(f"Directory outside library: {rel_dir}")
    if not abs_dir.is_dir():
        raise FileNotFoundError(f"Directory not found: {rel_dir}")

    exts = {e.lower() for e in extensions}
    folders = []
    videos = []
    with os.scandir(abs_dir) as entries:
        for entry in entries:
            rel_path = _to_rel(pathlib.Path(entry.path), root)
            if entry.is_dir():
                folders.append(
                    {"name": display_name(entry.name), "relativePath": display_name(rel_path)}
                )
            elif entry.is_file() and _is_media(entry.name, exts):
                videos.append(
                    VideoAsset(id=encode_id(rel_path), name=entry.name, rel_path=rel_path).to_dict()
                )
    folders.sort(key=lambda f: f["name"].casefold())
    videos.sort(key=lambda v: v["name"].casefold())

    normalized = "" if abs_dir == root else display_name(_to_rel(abs_dir, root))
    parent = None
    if normalized:
        parent = normalized.rpartition("/")[0]
    return {"dir": normalized, "parent": parent, "folders": folders, "videos": videos}
