"""Streaming expansion of artifact archives into detector-sized buffers.

Archives are never decompressed as a whole. Members are read one at a time with a hard
byte cap, and the total number of bytes handed out for one artifact never exceeds the
configured budget.
"""

from __future__ import annotations

import gzip
import io
import logging
import tarfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import BinaryIO, Iterator

from ci_leak_scanner.errors import CorruptArchive

logger = logging.getLogger(__name__)

# A nested archive inside the artifact is expanded; archives nested deeper are skipped.
MAX_NESTED_DEPTH = 1

MIN_STRING_LENGTH = 4

BINARY_SAMPLE_SIZE = 8192

SKIPPABLE_DIRECTORY_NAMES = ("node_modules", ".yarn", ".yarn-cache", ".npm", "venv", "vendor", ".go/pkg/mod/")

BINARY_FILE_EXTENSIONS = frozenset({
    # Images
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff", ".psd",
    # Media
    ".mp4", ".avi", ".mov", ".mkv", ".webm", ".mp3", ".wav", ".flac", ".ogg",
    # Executables and libraries
    ".exe", ".dll", ".so", ".dylib", ".bin", ".deb", ".rpm", ".msi", ".apk",
    # Compiled
    ".pyc", ".pyo", ".class", ".o", ".a", ".obj", ".lib", ".wasm",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    # Fonts
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
    # Other
    ".iso", ".dmg", ".img", ".pickle", ".pkl", ".parquet", ".sqlite", ".db",
})

_ZIP_MAGIC = b"PK\x03\x04"
_EMPTY_ZIP_MAGIC = b"PK\x05\x06"
_GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class ArchiveEntry:
    """One archive member ready for the detector."""
    name: str
    data: bytes
    archive: str = ""  # enclosing nested archive, empty for top-level members
    depth: int = 0


@dataclass
class ByteBudget:
    """Bytes that may still be handed to the detector for one artifact."""
    remaining: int

    def take(self, size: int) -> bool:
        if size > self.remaining:
            return False
        self.remaining -= size
        return True


def extract_printable_strings(data: bytes, min_length: int = MIN_STRING_LENGTH) -> bytes:
    """Keep runs of printable ASCII (plus tab, CR, LF) of at least ``min_length`` bytes.

    Each kept run is terminated by a newline, like the ``strings`` command.
    """
    if min_length <= 0:
        min_length = MIN_STRING_LENGTH

    out = bytearray()
    start = None
    for i, b in enumerate(data):
        if b in (9, 10, 13) or 32 <= b <= 126:
            if start is None:
                start = i
            continue
        if start is not None and i - start >= min_length:
            out += data[start:i]
            out += b"\n"
        start = None

    if start is not None and len(data) - start >= min_length:
        out += data[start:]
        out += b"\n"
    return bytes(out)


def looks_binary(data: bytes) -> bool:
    """Heuristic: NUL bytes in the leading sample mean binary content."""
    return b"\x00" in data[:BINARY_SAMPLE_SIZE]


def archive_kind(head: bytes) -> str | None:
    """Identify an archive from its leading bytes."""
    if head.startswith(_ZIP_MAGIC) or head.startswith(_EMPTY_ZIP_MAGIC):
        return "zip"
    if head.startswith(_GZIP_MAGIC):
        return "gzip"
    if len(head) >= 262 and head[257:262] == b"ustar":
        return "tar"
    return None


def is_skippable_path(name: str) -> str | None:
    """Return the blocklisted directory keyword contained in ``name``, if any."""
    for keyword in SKIPPABLE_DIRECTORY_NAMES:
        if keyword in name:
            return keyword
    return None


def has_binary_extension(name: str) -> bool:
    return PurePosixPath(name).suffix.lower() in BINARY_FILE_EXTENSIONS


def iter_artifact_entries(fileobj: BinaryIO, artifact_name: str, max_bytes: int) -> Iterator[ArchiveEntry]:
    """Yield detector buffers for a downloaded artifact.

    Recognised archives (zip, tar, gzip) are streamed member by member. Anything else
    is reduced to its printable strings.

    Raises:
        CorruptArchive: the top-level archive cannot be opened.
    """
    budget = ByteBudget(remaining=max_bytes if max_bytes > 0 else float("inf"))
    fileobj.seek(0)
    head = fileobj.read(512)
    fileobj.seek(0)

    kind = archive_kind(head)
    if kind is None:
        data = fileobj.read(max_bytes + 1 if max_bytes > 0 else -1)
        if max_bytes > 0 and len(data) > max_bytes:
            logger.debug("Skipped artifact larger than the cap: %s", artifact_name)
            return
        strings = extract_printable_strings(data)
        if strings and budget.take(len(strings)):
            logger.debug("Extracted %d bytes of strings from unknown artifact type %s", len(strings), artifact_name)
            yield ArchiveEntry(name=artifact_name, data=strings)
        return

    yield from _iter_archive(fileobj, kind, artifact_name, "", 0, max_bytes, budget)


def _iter_archive(
    fileobj: BinaryIO,
    kind: str,
    name: str,
    parent: str,
    depth: int,
    max_bytes: int,
    budget: ByteBudget,
) -> Iterator[ArchiveEntry]:
    try:
        if kind == "zip":
            members = _iter_zip(fileobj, max_bytes)
        elif kind == "tar":
            members = _iter_tar(fileobj, max_bytes)
        else:
            members = _iter_gzip(fileobj, name, max_bytes)
        for member_name, data in members:
            yield from _handle_member(member_name, data, name if depth else parent, depth, max_bytes, budget)
    except (
        zipfile.BadZipFile, tarfile.TarError, gzip.BadGzipFile, zlib.error,
        EOFError, OSError, RuntimeError, NotImplementedError,
    ) as exc:
        # Encrypted zip members raise RuntimeError, unknown compression methods NotImplementedError.
        if depth == 0:
            raise CorruptArchive(f"cannot read archive {name}: {exc}") from exc
        logger.warning("Cannot read nested archive %s: %s", name, exc)


def _handle_member(
    member_name: str,
    data: bytes | None,
    archive: str,
    depth: int,
    max_bytes: int,
    budget: ByteBudget,
) -> Iterator[ArchiveEntry]:
    keyword = is_skippable_path(member_name)
    if keyword:
        logger.debug("Skipped archive entry due to blocklist entry %s: %s", keyword, member_name)
        return
    if data is None:
        logger.debug("Skipped archive entry larger than the cap: %s", member_name)
        return

    nested = archive_kind(data[:512])
    if nested is not None:
        if depth + 1 > MAX_NESTED_DEPTH:
            logger.debug("Max archive nesting depth reached, skipping %s", member_name)
            return
        logger.debug("Detected nested archive %s at depth %d", member_name, depth + 1)
        yield from _iter_archive(io.BytesIO(data), nested, member_name, archive, depth + 1, max_bytes, budget)
        return

    if has_binary_extension(member_name) or looks_binary(data):
        return
    if not budget.take(len(data)):
        logger.debug("Artifact byte budget exhausted, skipping %s", member_name)
        return

    yield ArchiveEntry(name=PurePosixPath(member_name).name, data=data, archive=archive, depth=depth)


def _read_capped(stream: BinaryIO, max_bytes: int) -> bytes | None:
    data = stream.read(max_bytes + 1 if max_bytes > 0 else -1)
    if max_bytes > 0 and len(data) > max_bytes:
        return None
    return data


def _iter_zip(fileobj: BinaryIO, max_bytes: int) -> Iterator[tuple[str, bytes | None]]:
    with zipfile.ZipFile(fileobj) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            if max_bytes > 0 and info.file_size > max_bytes:
                yield info.filename, None
                continue
            with zf.open(info) as member:
                yield info.filename, _read_capped(member, max_bytes)


def _iter_tar(fileobj: BinaryIO, max_bytes: int) -> Iterator[tuple[str, bytes | None]]:
    with tarfile.open(fileobj=fileobj, mode="r:*") as tf:
        for info in tf:
            if not info.isfile():
                continue
            if max_bytes > 0 and info.size > max_bytes:
                yield info.name, None
                continue
            member = tf.extractfile(info)
            if member is None:
                continue
            with member:
                yield info.name, _read_capped(member, max_bytes)


def _iter_gzip(fileobj: BinaryIO, name: str, max_bytes: int) -> Iterator[tuple[str, bytes | None]]:
    # A gzip stream can wrap a tar archive; tarfile sniffs the compression itself.
    fileobj.seek(0)
    with gzip.GzipFile(fileobj=fileobj) as gz:
        head = gz.read(512)
    fileobj.seek(0)
    if archive_kind(head) == "tar":
        yield from _iter_tar(fileobj, max_bytes)
        return

    inner = name[:-3] if name.endswith(".gz") else name
    with gzip.GzipFile(fileobj=fileobj) as gz:
        yield inner, _read_capped(gz, max_bytes)
