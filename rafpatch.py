#!/usr/bin/env python3
"""Read and patch RAF archives together with the release manifest.

A RAF archive is a pair of files: ``Archive_N.raf`` holds a header, a table
of ``{hash, offset, size, string index}`` records and a string table of
entry paths, while ``Archive_N.raf.dat`` holds the payloads back to back.
Payloads are usually zlib streams.  The release manifest (``releasemanifest``)
is a separate index describing the game's directory tree along with the
compressed and uncompressed size of every file, and it has to agree with the
archives or the client will try to repair itself.

Replacing a payload rewrites the whole ``.raf.dat`` file in offset order,
updates the offset/size fields of every RAF record in place, and pushes the
new sizes of the replaced entries into the manifest:

```
python rafpatch.py list Archive_1.raf --pattern skn
python rafpatch.py extract Archive_1.raf extracted/ --pattern "ahri.*skn" --obj
python rafpatch.py patch filearchives/ --replacements mods/ --release-dir releases/0.0.1.7/
python rafpatch.py fix-manifest filearchives/ --release-dir releases/0.0.1.7/
```

Neither ``ArchiveIndex`` nor ``ManifestIndex`` is thread safe.
"""

from __future__ import annotations

import argparse
import logging
import mmap
import os
import re
import shutil
import struct
import sys
import zlib
from dataclasses import dataclass, field
from itertools import chain
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import structlog

from skn import ObjMesh, SknMesh, SknParsingError

logger = structlog.get_logger()

RAF_HEADER = struct.Struct("<5I")  # magic, version, index value, file list offset, string table offset
RAF_COUNT = struct.Struct("<I")
RAF_ENTRY_STRUCT = struct.Struct("<4I")  # hash, offset, size, string table index
RAF_STRING_TABLE_HEADER = struct.Struct("<II")  # table size, count
RAF_STRING_ENTRY = struct.Struct("<II")  # offset relative to the table, length including NUL
RAF_LOCATION_FIELDS = struct.Struct("<II")  # offset, size; follows the stored hash

ZLIB_MAGICS = (0x7801, 0x789C)

MANIFEST_MAGIC = 0x4D534C52  # "RLSM"
MANIFEST_FILE_TYPE = 0x00010001
MANIFEST_HEADER = struct.Struct("<4I")  # magic, file type, item count, version
MANIFEST_COUNT = struct.Struct("<I")
MANIFEST_DIR_STRUCT = struct.Struct("<5I")  # name, subdir index, subdir count, file index, file count
MANIFEST_FILE_STRUCT = struct.Struct("<II16sIIIII")  # name, version, md5, flags, size, compressed size, 2 unknown
MANIFEST_STRING_TABLE_HEADER = struct.Struct("<II")  # count, data size
MANIFEST_SIZE_FIELDS = struct.Struct("<II")  # size, compressed size
MANIFEST_SIZE_FIELD_OFFSET = 28

SCRATCH_BUFFER_SIZE = 1024 * 1024

# Largest size (either field) a manifest file entry may legitimately record.
MANIFEST_MAX_SIZE = int(os.environ.get("RAFPATCH_MANIFEST_MAX_SIZE", 75 * 1024 * 1024))

DEBUG_PARSE = os.environ.get("RAFPATCH_DEBUG_PARSE", "").lower() not in ("", "0", "false", "no")


class RafError(RuntimeError):
    """Base class for archive and manifest errors."""


class FormatViolation(RafError):
    """Raised when an index does not match the expected binary layout."""


class DecodeFailure(RafError):
    """Raised when a compressed payload cannot be inflated."""


class IntegrityViolation(RafError):
    """Raised when written or recorded data disagrees with what was expected.

    These are never recovered from: halting is preferred over persisting an
    archive or manifest whose sizes no longer describe the data.
    """

    def __init__(self, message: str, *, expected: object = None, actual: object = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


Replacement = Union[bytes, bytearray, memoryview, os.PathLike, ObjMesh]


def raf_hash(name: str) -> int:
    """Return the RAF hash for ``name``.

    This is an ELF-style hash with plenty of collisions.  It is only ever
    stored alongside an entry; lookups go through the resolved path.
    """

    value = 0
    for char in name.lower():
        value = ((value << 4) + ord(char)) & 0xFFFFFFFF
        high = value & 0xF0000000
        if high:
            value ^= high >> 24
            value ^= high
    return value


def is_compressed(data: bytes) -> bool:
    """Return True if ``data`` starts with one of the zlib headers RAF uses."""

    if len(data) < 2:
        return False
    return ((data[0] << 8) | data[1]) in ZLIB_MAGICS


def decompress(data: bytes) -> bytes:
    """Inflate a zlib stream in ``SCRATCH_BUFFER_SIZE`` steps.

    A step that produces nothing before the end of the stream means the
    input is truncated or corrupt; that is reported as ``DecodeFailure``
    rather than waiting for more input.
    """

    inflater = zlib.decompressobj()
    output = bytearray()
    pending = bytes(data)
    try:
        while not inflater.eof:
            chunk = inflater.decompress(pending, SCRATCH_BUFFER_SIZE)
            pending = inflater.unconsumed_tail
            if not chunk and not inflater.eof:
                raise DecodeFailure("failed to decompress, inflate made no progress")
            output.extend(chunk)
    except zlib.error as exc:
        raise DecodeFailure(f"failed to decompress: {exc}") from exc
    return bytes(output)


def compress(data: bytes) -> bytes:
    """Deflate ``data`` and verify the result inflates back to ``data``."""

    original = bytes(data)
    deflater = zlib.compressobj()
    output = bytearray()
    view = memoryview(original)
    for start in range(0, len(view), SCRATCH_BUFFER_SIZE):
        output.extend(deflater.compress(view[start : start + SCRATCH_BUFFER_SIZE]))
    output.extend(deflater.flush())
    compressed = bytes(output)

    roundtrip = decompress(compressed)
    if roundtrip != original:
        raise IntegrityViolation(
            "compressed payload does not inflate back to its input",
            expected=len(original),
            actual=len(roundtrip),
        )
    return compressed


def human_readable_size(count: int, si: bool = False) -> str:
    unit = 1000 if si else 1024
    if count < unit:
        return f"{count} B"
    value = float(count)
    exponent = 0
    while value >= unit and exponent < 6:
        value /= unit
        exponent += 1
    prefix = ("kMGTPE" if si else "KMGTPE")[exponent - 1] + ("" if si else "i")
    return f"{value:.1f} {prefix}B"


def _display_name(path: Path) -> str:
    """Return the last two path components, e.g. ``0.0.0.25/Archive_1.raf``."""

    return "/".join(Path(path).parts[-2:])


def _map_file(path: Path) -> mmap.mmap:
    """Map ``path`` read-write.  The mapping outlives the descriptor."""

    flags = os.O_RDWR
    # Windows requires the O_BINARY flag to avoid implicit newline conversion.
    flags |= getattr(os, "O_BINARY", 0)
    fd = os.open(path, flags)
    try:
        if os.fstat(fd).st_size == 0:
            raise FormatViolation(f"{path} is empty")
        return mmap.mmap(fd, length=0, access=mmap.ACCESS_WRITE)
    finally:
        os.close(fd)


@dataclass
class ArchiveEntry:
    record_offset: int
    hash: int
    offset: int
    size: int
    string_table_index: int
    name: str = ""
    expected_bytes: Optional[bytes] = field(default=None, repr=False)

    @property
    def short_name(self) -> str:
        return self.name.rsplit("/", 1)[-1]

    def describe(self) -> str:
        return f"{self.name} is of size {human_readable_size(self.size)} at offset {self.offset}"


@dataclass
class PatchResult:
    """Outcome of ``ArchiveIndex.patch``: the replaced names and the new layout."""

    replaced: List[str] = field(default_factory=list)
    entries: List[ArchiveEntry] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.replaced)


class ArchiveIndex:
    """A ``.raf`` index mapped read-write, plus its ``.raf.dat`` payload file."""

    def __init__(self, location: Path, manifest: Optional["ManifestIndex"] = None) -> None:
        self.location = Path(location)
        self.data_path = self.location.with_name(self.location.name + ".dat")
        self.backup_path = self.location.with_name(self.location.name + ".dat.bak")
        self.name = _display_name(self.location)
        self.manifest = manifest
        self.magic = 0
        self.version = 0
        self.index_value = 0
        self.entries: List[ArchiveEntry] = []
        self.file_names: Set[str] = set()
        self.short_file_names: Set[str] = set()
        self._buffer = _map_file(self.location)
        try:
            self.parse()
        except Exception:
            self._buffer.close()
            raise

    def __enter__(self) -> "ArchiveIndex":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __str__(self) -> str:
        return f"{self.name} RAF with {len(self.entries)} entries"

    def close(self) -> None:
        if not self._buffer.closed:
            self._buffer.close()

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries)

    def parse(self) -> None:
        """(Re)build ``entries`` from the mapped index."""

        self.entries = []
        self.file_names = set()
        self.short_file_names = set()
        try:
            self._parse(self._buffer)
        except (struct.error, UnicodeDecodeError) as exc:
            raise FormatViolation(f"failed to parse RAF index {self.name}: {exc}") from exc

    def _parse(self, buffer: mmap.mmap) -> None:
        (
            self.magic,
            self.version,
            self.index_value,
            file_list_offset,
            string_table_offset,
        ) = RAF_HEADER.unpack_from(buffer, 0)
        if DEBUG_PARSE:
            logger.debug(
                "raf header",
                archive=self.name,
                magic=f"{self.magic:#010x}",
                version=self.version,
                index_value=self.index_value,
                file_list_offset=file_list_offset,
                string_table_offset=string_table_offset,
            )

        (count,) = RAF_COUNT.unpack_from(buffer, file_list_offset)
        cursor = file_list_offset + RAF_COUNT.size
        for _ in range(count):
            name_hash, offset, size, string_index = RAF_ENTRY_STRUCT.unpack_from(buffer, cursor)
            self.entries.append(
                ArchiveEntry(
                    record_offset=cursor,
                    hash=name_hash,
                    offset=offset,
                    size=size,
                    string_table_index=string_index,
                )
            )
            cursor += RAF_ENTRY_STRUCT.size

        _table_size, string_count = RAF_STRING_TABLE_HEADER.unpack_from(buffer, string_table_offset)
        if string_count != count:
            raise FormatViolation(
                f"disagreeing counts in {self.name}: string table has {string_count}, "
                f"file list has {count}"
            )

        by_string_index: Dict[int, ArchiveEntry] = {}
        for entry in self.entries:
            by_string_index.setdefault(entry.string_table_index, entry)

        cursor = string_table_offset + RAF_STRING_TABLE_HEADER.size
        for i in range(count):
            relative_offset, length = RAF_STRING_ENTRY.unpack_from(buffer, cursor)
            cursor += RAF_STRING_ENTRY.size
            start = string_table_offset + relative_offset
            end = start + length - 1  # drop the NUL terminator
            if length < 1 or end > len(buffer):
                raise FormatViolation(f"string {i} of {self.name} lies outside the index")
            name = buffer[start:end].decode("utf-8")
            self.file_names.add(name)
            entry = by_string_index.get(i)
            if entry is not None:
                entry.name = name
                self.short_file_names.add(entry.short_name.lower())
            if DEBUG_PARSE:
                logger.debug("raf string", archive=self.name, index=i, name=name)
                if entry is not None and entry.hash != raf_hash(name):
                    logger.debug("stored hash differs", entry=name, stored=entry.hash)

    def get_entry(self, name: str) -> ArchiveEntry:
        for entry in self.entries:
            if entry.name == name:
                return entry
        lowered = name.lower()
        for entry in self.entries:
            if entry.name.lower() == lowered:
                return entry
        raise KeyError(f"{name} not found in {self.name}")

    def read_raw(self, entry: ArchiveEntry) -> bytes:
        """Return the stored (possibly compressed) bytes of ``entry``."""

        with self.data_path.open("rb") as handle:
            handle.seek(entry.offset)
            data = handle.read(entry.size)
        if len(data) != entry.size:
            raise FormatViolation(f"{entry.name} extends past the end of {self.data_path.name}")
        return data

    def read(self, entry: Union[ArchiveEntry, str]) -> bytes:
        """Return the payload of ``entry``, inflated when it is compressed."""

        if isinstance(entry, str):
            entry = self.get_entry(entry)
        data = self.read_raw(entry)
        if is_compressed(data):
            return decompress(data)
        return data

    def patch(self, replacements: Mapping[str, Replacement]) -> PatchResult:
        """Replace payloads keyed by lowercase short name and rewrite the data file.

        Entries are rewritten in ascending offset order into a fresh data
        file while the previous one is kept as ``.raf.dat.bak``; if anything
        fails before the rewrite completes the backup is moved back into
        place and the error propagates.  Afterwards the index records are
        patched in place, the written bytes re-read and compared, and the
        index re-parsed as a consistency check.

        Payloads are assumed to be laid out contiguously without overlap;
        this is not verified.
        """

        wanted = {key.lower(): value for key, value in replacements.items()}
        if self.short_file_names.isdisjoint(wanted):
            return PatchResult(entries=list(self.entries))

        ordered = sorted(self.entries, key=lambda entry: entry.offset)
        layout: Dict[int, Tuple[int, int]] = {}
        replaced: List[str] = []
        manifest_updates: List[Tuple[str, int, int]] = []

        self._move_to_backup()
        try:
            with self.backup_path.open("rb") as old, self.data_path.open("wb") as created:
                for entry in ordered:
                    replacement = wanted.get(entry.short_name.lower())
                    new_offset, new_size, uncompressed_size = self._rewrite_entry(
                        entry, replacement, old, created
                    )
                    layout[entry.record_offset] = (new_offset, new_size)
                    if replacement is None:
                        continue
                    replaced.append(entry.name)
                    if self.manifest is not None:
                        self.manifest.validate_sizes(entry, new_size, uncompressed_size)
                        manifest_updates.append((entry.name, new_size, uncompressed_size))
        except BaseException:
            for entry in self.entries:
                entry.expected_bytes = None
            self._restore_backup()
            raise

        self.backup_path.unlink()
        logger.info("rewrote data file", archive=self.name, replaced=len(replaced))

        for entry in self.entries:
            entry.offset, entry.size = layout[entry.record_offset]
            RAF_LOCATION_FIELDS.pack_into(self._buffer, entry.record_offset + 4, entry.offset, entry.size)
        self._buffer.flush()

        if manifest_updates:
            for path, compressed_size, uncompressed_size in manifest_updates:
                self.manifest.set_size(path, compressed_size, uncompressed_size)
            self.manifest.flush()

        for entry in self.entries:
            self._check_expected_bytes(entry)

        self._audit()
        return PatchResult(replaced=replaced, entries=list(self.entries))

    def _rewrite_entry(
        self,
        entry: ArchiveEntry,
        replacement: Optional[Replacement],
        old: BinaryIO,
        created: BinaryIO,
    ) -> Tuple[int, int, int]:
        """Copy or replace one payload; return (new offset, new size, uncompressed size)."""

        new_offset = created.tell()
        if old.tell() != entry.offset:
            logger.debug(
                "read cursor out of step with entry offset",
                entry=entry.name,
                expected=entry.offset,
                actual=old.tell(),
            )
            old.seek(entry.offset)
        original = old.read(entry.size)
        if len(original) != entry.size:
            raise FormatViolation(f"{entry.name} extends past the end of {self.backup_path.name}")

        if replacement is None:
            payload = original
            uncompressed_size = len(original)
        else:
            compressed = is_compressed(original)
            payload = self._replacement_payload(entry, original, compressed, replacement)
            uncompressed_size = len(payload)
            if compressed:
                payload = compress(payload)
            entry.expected_bytes = payload

        created.write(payload)
        new_size = created.tell() - new_offset
        if new_size != len(payload):
            raise IntegrityViolation(
                f"mismatched sizes writing {entry.name}: expected {len(payload)}, got {new_size}",
                expected=len(payload),
                actual=new_size,
            )
        return new_offset, new_size, uncompressed_size

    def _replacement_payload(
        self,
        entry: ArchiveEntry,
        original: bytes,
        compressed: bool,
        replacement: Replacement,
    ) -> bytes:
        if isinstance(replacement, (bytes, bytearray, memoryview)):
            return bytes(replacement)
        if isinstance(replacement, os.PathLike):
            return Path(replacement).read_bytes()
        if isinstance(replacement, ObjMesh):
            decompressed = decompress(original) if compressed else original
            mesh = SknMesh.decode(decompressed, name=entry.name)
            if len(replacement.vertices) != len(mesh.vertices):
                logger.warning(
                    "mismatched vertex counts, keeping original mesh",
                    entry=entry.name,
                    expected=len(mesh.vertices),
                    got=len(replacement.vertices),
                )
                return decompressed
            mesh.replace_geometry(replacement.vertices, replacement.indices)
            return mesh.encode()
        raise TypeError(
            f"unexpected replacement type {type(replacement).__name__} for {entry.name}"
        )

    def _move_to_backup(self) -> None:
        if self.backup_path.exists():
            # Leftover from an interrupted patch: the backup is the last complete data file.
            logger.warning(
                "backup already present, discarding partial data file",
                archive=self.name,
                backup=str(self.backup_path),
            )
            if self.data_path.exists():
                self.data_path.unlink()
            return
        self.data_path.rename(self.backup_path)

    def _restore_backup(self) -> None:
        logger.warning("restoring data file from backup", archive=self.name)
        os.replace(self.backup_path, self.data_path)

    def _check_expected_bytes(self, entry: ArchiveEntry) -> None:
        expected = entry.expected_bytes
        if expected is None:
            return
        entry.expected_bytes = None
        actual = self.read_raw(entry)
        if actual != expected:
            raise IntegrityViolation(
                f"bytes on disk for {entry.name} differ from the bytes written",
                expected=len(expected),
                actual=len(actual),
            )

    def _audit(self) -> None:
        before = [entry.describe() for entry in self.entries]
        self.parse()
        after = [entry.describe() for entry in self.entries]
        if len(before) != len(after):
            logger.warning("entry count changed on re-parse", archive=self.name, before=len(before), after=len(after))
        for old, new in zip(before, after):
            if old != new:
                logger.warning("entry mismatch on re-parse", archive=self.name, before=old, after=new)

    def sync_manifest(self) -> int:
        """Push every entry's sizes into the attached manifest.

        Entries the manifest does not list are skipped.  Returns the number
        of manifest records that changed.
        """

        if self.manifest is None:
            raise ValueError(f"no release manifest attached to {self.name}")
        changed = 0
        for entry in self.entries:
            record = self.manifest.lookup(entry.name)
            if record is None or record.compressed_size == entry.size:
                continue
            if self.manifest.set_size(entry, entry.size, len(self.read(entry))):
                changed += 1
        self.manifest.flush()
        return changed


@dataclass
class ManifestDirEntry:
    index: int
    name_index: int
    subdir_index: int
    subdir_count: int
    file_index: int
    file_count: int
    name: str = ""
    parent: Optional[int] = None
    subdirs: List[int] = field(default_factory=list)
    files: List[int] = field(default_factory=list)


@dataclass
class ManifestFileEntry:
    index: int
    record_offset: int
    name_index: int
    version: int
    size: int
    compressed_size: int
    name: str = ""
    parent: Optional[int] = None


class ManifestIndex:
    """The release manifest, mapped read-write.

    Directories and files live in two flat lists; ``parent``, ``subdirs``
    and ``files`` hold indices into those lists.

    On first use a ``.bak`` copy of the manifest is taken and never
    overwritten afterwards.
    """

    def __init__(
        self,
        location: Path,
        backup_path: Optional[Path] = None,
        *,
        max_file_size: Optional[int] = None,
    ) -> None:
        self.location = Path(location)
        self.backup_path = (
            Path(backup_path)
            if backup_path is not None
            else self.location.with_name(self.location.name + ".bak")
        )
        self.name = _display_name(self.location)
        self.max_file_size = MANIFEST_MAX_SIZE if max_file_size is None else max_file_size
        self.item_count = 0
        self.version = 0
        self.directories: List[ManifestDirEntry] = []
        self.files: List[ManifestFileEntry] = []
        self.strings: List[str] = []
        self._by_path: Dict[str, ManifestFileEntry] = {}
        self._first_file_record = 0

        if not self.backup_path.exists():
            shutil.copy2(self.location, self.backup_path)
            logger.info("created release manifest backup", backup=str(self.backup_path))

        self._buffer = _map_file(self.location)
        try:
            self.parse()
            self.sanity_check()
        except Exception:
            self._buffer.close()
            raise

    def __enter__(self) -> "ManifestIndex":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __str__(self) -> str:
        return f"{self.name} manifest with {len(self.directories)} directories and {len(self.files)} files"

    def flush(self) -> None:
        self._buffer.flush()

    def close(self) -> None:
        if not self._buffer.closed:
            self._buffer.flush()
            self._buffer.close()

    def parse(self) -> None:
        try:
            self._parse(self._buffer)
        except (struct.error, UnicodeDecodeError) as exc:
            raise FormatViolation(f"failed to parse release manifest {self.name}: {exc}") from exc

    def _parse(self, buffer: mmap.mmap) -> None:
        magic, file_type, item_count, version = MANIFEST_HEADER.unpack_from(buffer, 0)
        if magic != MANIFEST_MAGIC:
            raise FormatViolation(
                f"wrong magic in {self.name}: got 0x{magic:08X}, expected 0x{MANIFEST_MAGIC:08X}"
            )
        if file_type != MANIFEST_FILE_TYPE:
            raise FormatViolation(
                f"wrong file type in {self.name}: got 0x{file_type:08X}, "
                f"expected 0x{MANIFEST_FILE_TYPE:08X}"
            )
        cursor = MANIFEST_HEADER.size

        (directory_count,) = MANIFEST_COUNT.unpack_from(buffer, cursor)
        cursor += MANIFEST_COUNT.size
        directories: List[ManifestDirEntry] = []
        for i in range(directory_count):
            directories.append(ManifestDirEntry(i, *MANIFEST_DIR_STRUCT.unpack_from(buffer, cursor)))
            cursor += MANIFEST_DIR_STRUCT.size

        (file_count,) = MANIFEST_COUNT.unpack_from(buffer, cursor)
        cursor += MANIFEST_COUNT.size
        # header, directory count, directory table, file count
        first_file_record = (
            MANIFEST_HEADER.size
            + MANIFEST_COUNT.size
            + directory_count * MANIFEST_DIR_STRUCT.size
            + MANIFEST_COUNT.size
        )
        files: List[ManifestFileEntry] = []
        for i in range(file_count):
            (
                name_index,
                file_version,
                _md5,
                _flags,
                size,
                compressed_size,
                _unknown1,
                _unknown2,
            ) = MANIFEST_FILE_STRUCT.unpack_from(buffer, cursor)
            files.append(
                ManifestFileEntry(
                    index=i,
                    record_offset=cursor,
                    name_index=name_index,
                    version=file_version,
                    size=size,
                    compressed_size=compressed_size,
                )
            )
            cursor += MANIFEST_FILE_STRUCT.size

        if item_count != directory_count + file_count:
            # Shipped manifests never seem to agree here; the field is informational.
            logger.debug(
                "manifest item count differs from table sizes",
                manifest=self.name,
                item_count=item_count,
                directories=directory_count,
                files=file_count,
            )

        string_count, _data_size = MANIFEST_STRING_TABLE_HEADER.unpack_from(buffer, cursor)
        cursor += MANIFEST_STRING_TABLE_HEADER.size
        strings: List[str] = []
        for i in range(string_count):
            end = buffer.find(b"\x00", cursor)
            if end < 0:
                raise FormatViolation(f"unterminated string {i} in {self.name}")
            strings.append(buffer[cursor:end].decode("utf-8"))
            cursor = end + 1

        for entry in chain(directories, files):
            if entry.name_index == 0:
                entry.name = ""
            elif entry.name_index < len(strings):
                entry.name = strings[entry.name_index]
            else:
                raise FormatViolation(
                    f"name index {entry.name_index} out of range in {self.name}"
                )

        self.item_count = item_count
        self.version = version
        self.directories = directories
        self.files = files
        self.strings = strings
        self._first_file_record = first_file_record
        self._link_tree()
        self._by_path = {self.normalize_path(self.path_of(entry)): entry for entry in self.files}

    def _link_tree(self) -> None:
        """Assign parents by walking the directory table depth first.

        Files are laid out in the order their directories are visited, so the
        files from one visited directory's ``file_index`` up to the next
        visited directory's ``file_index`` belong to the former.  The last
        directory of the walk owns its declared ``file_count`` files.
        """

        if not self.directories:
            return
        visited: Set[int] = set()
        last = self.directories[self._visit(0, None, visited)]
        self._adopt(last, last.file_index, last.file_index + last.file_count)

    def _visit(self, index: int, previous: Optional[int], visited: Set[int]) -> int:
        if index >= len(self.directories):
            raise FormatViolation(f"directory index {index} out of range in {self.name}")
        if index in visited:
            raise FormatViolation(f"directory {index} reached twice in {self.name}")
        visited.add(index)
        directory = self.directories[index]
        if previous is not None:
            before = self.directories[previous]
            self._adopt(before, before.file_index, directory.file_index)

        last = index
        for child in range(directory.subdir_index, directory.subdir_index + directory.subdir_count):
            if child >= len(self.directories):
                raise FormatViolation(f"directory index {child} out of range in {self.name}")
            self.directories[child].parent = index
            directory.subdirs.append(child)
            last = self._visit(child, last, visited)
        return last

    def _adopt(self, directory: ManifestDirEntry, start: int, stop: int) -> None:
        if stop > len(self.files):
            raise FormatViolation(
                f"directory {directory.name!r} claims files beyond the file table in {self.name}"
            )
        for file_index in range(start, stop):
            entry = self.files[file_index]
            if entry.parent is not None:
                raise FormatViolation(f"file {entry.name!r} claimed by two directories in {self.name}")
            entry.parent = directory.index
            directory.files.append(file_index)

    def path_of(self, entry: Union[ManifestDirEntry, ManifestFileEntry]) -> str:
        parts = [entry.name]
        parent = entry.parent
        while parent is not None:
            directory = self.directories[parent]
            parts.append(directory.name)
            parent = directory.parent
        return "/".join(reversed(parts))

    @staticmethod
    def normalize_path(path: str) -> str:
        return path if path.startswith("/") else "/" + path

    def lookup(self, path: str) -> Optional[ManifestFileEntry]:
        return self._by_path.get(self.normalize_path(path))

    def paths(self) -> List[str]:
        return list(self._by_path)

    def set_size(
        self,
        target: Union[str, ArchiveEntry],
        compressed_size: int,
        uncompressed_size: int,
    ) -> bool:
        """Record new sizes for a file; returns False when nothing changed.

        The record is only rewritten when the compressed size differs from
        the stored one.
        """

        entry = self._require(target)
        if entry.compressed_size == compressed_size:
            return False

        self._check_sizes(entry, compressed_size, uncompressed_size)
        MANIFEST_SIZE_FIELDS.pack_into(
            self._buffer,
            entry.record_offset + MANIFEST_SIZE_FIELD_OFFSET,
            uncompressed_size,
            compressed_size,
        )
        entry.size = uncompressed_size
        entry.compressed_size = compressed_size
        self._check_entry(entry)
        return True

    def validate_sizes(
        self,
        target: Union[str, ArchiveEntry],
        compressed_size: int,
        uncompressed_size: int,
    ) -> ManifestFileEntry:
        """Check that ``set_size`` would accept these sizes without writing them."""

        entry = self._require(target)
        self._check_sizes(entry, compressed_size, uncompressed_size)
        return entry

    def _require(self, target: Union[str, ArchiveEntry]) -> ManifestFileEntry:
        path = target.name if isinstance(target, ArchiveEntry) else target
        entry = self.lookup(path)
        if entry is None:
            raise KeyError(f"{self.normalize_path(path)} not found in {self.name}")
        return entry

    def _check_sizes(self, entry: ManifestFileEntry, compressed_size: int, uncompressed_size: int) -> None:
        self._check_size(entry, "size", uncompressed_size)
        self._check_size(entry, "compressed size", compressed_size)
        self._check_record_offset(entry)

    def sanity_check(self) -> None:
        for entry in self.files:
            self._check_entry(entry)

    def _check_size(self, entry: ManifestFileEntry, label: str, value: int) -> None:
        if value < 0 or value > self.max_file_size:
            raise IntegrityViolation(
                f"unexpected {label} {value} for {self.path_of(entry)}",
                expected=f"0..{self.max_file_size}",
                actual=value,
            )

    def _check_entry(self, entry: ManifestFileEntry) -> None:
        self._check_size(entry, "size", entry.size)
        self._check_size(entry, "compressed size", entry.compressed_size)
        if not entry.name:
            raise IntegrityViolation(f"file record {entry.index} in {self.name} has no name")
        self._check_record_offset(entry)
        if entry.parent is None:
            logger.warning("file has no parent folder", manifest=self.name, file=entry.name)

    def _check_record_offset(self, entry: ManifestFileEntry) -> None:
        expected = self._first_file_record + entry.index * MANIFEST_FILE_STRUCT.size
        if entry.record_offset < self._first_file_record:
            raise IntegrityViolation(
                f"record offset {entry.record_offset} of {entry.name} lies inside the manifest header",
                expected=expected,
                actual=entry.record_offset,
            )
        if entry.record_offset != expected:
            raise IntegrityViolation(
                f"record offset {entry.record_offset} of {entry.name} is not its file table slot",
                expected=expected,
                actual=entry.record_offset,
            )


def collect_replacements(directory: Path) -> Dict[str, Replacement]:
    """Return replacement content found in ``directory`` keyed by lowercase short name.

    ``<name>.skn.obj`` files are loaded as mesh replacements for
    ``<name>.skn``; every other file replaces the entry with its own name.
    """

    replacements: Dict[str, Replacement] = {}
    for path in sorted(Path(directory).rglob("*")):
        if not path.is_file():
            continue
        name = path.name.lower()
        if name.endswith(".skn.obj"):
            replacements[name[: -len(".obj")]] = ObjMesh.load(path)
        else:
            replacements[name] = path
    return replacements


def _version_key(name: str) -> Tuple[int, ...]:
    try:
        return tuple(int(part) for part in name.split("."))
    except ValueError:
        return ()


def find_archives(root: Path) -> List[Path]:
    """Return every ``.raf`` below ``root``, newest release directory first."""

    root = Path(root)
    if root.is_file():
        return [root]
    archives = sorted(root.rglob("*.raf"))
    archives.sort(key=lambda path: _version_key(path.parent.name), reverse=True)
    return archives


def extract_entries(
    archive: ArchiveIndex,
    output_dir: Path,
    pattern: Optional[str] = None,
    as_obj: bool = False,
) -> List[Path]:
    """Write the inflated payload of every matching entry into ``output_dir``.

    ``pattern`` is a case-insensitive regular expression searched in the
    entry path.  With ``as_obj`` set, ``.skn`` meshes are additionally
    converted to ``<name>.skn.obj``.
    """

    matcher = re.compile(pattern, re.IGNORECASE) if pattern else None
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written: List[Path] = []
    for entry in archive.entries:
        if matcher is not None and not matcher.search(entry.name):
            continue
        data = archive.read(entry)
        target = output_dir / entry.short_name
        target.write_bytes(data)
        written.append(target)

        if as_obj and entry.short_name.lower().endswith(".skn"):
            try:
                mesh = SknMesh.decode(data, name=entry.name)
            except SknParsingError as exc:
                logger.warning("skipping mesh conversion", entry=entry.name, error=str(exc))
                continue
            obj_path = output_dir / (entry.short_name + ".obj")
            ObjMesh.from_skn(mesh).save(obj_path)
            written.append(obj_path)
    return written


def configure_logging(verbose: bool = False) -> None:
    # Command output goes to stdout, log lines to stderr.
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def _expand_archives(paths: Iterable[Path]) -> List[Path]:
    archives: List[Path] = []
    for path in paths:
        archives.extend(find_archives(path))
    return archives


def _open_manifest(args: argparse.Namespace) -> Optional[ManifestIndex]:
    if args.manifest is not None:
        return ManifestIndex(args.manifest)
    if args.release_dir is not None:
        return ManifestIndex(args.release_dir / "releasemanifest")
    return None


def _add_manifest_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument("--manifest", type=Path, help="path to the releasemanifest file")
    group.add_argument(
        "--release-dir",
        type=Path,
        help="release directory containing the releasemanifest file",
    )


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and patch RAF archives")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="list the entries of an archive")
    list_parser.add_argument("archive", type=Path, help="path to the .raf index")
    list_parser.add_argument("--pattern", help="only list entries matching this regular expression")

    extract_parser = subparsers.add_parser("extract", help="write inflated entries to a directory")
    extract_parser.add_argument("archive", type=Path, help="path to the .raf index")
    extract_parser.add_argument("output", type=Path, help="directory that will receive the files")
    extract_parser.add_argument("--pattern", help="only extract entries matching this regular expression")
    extract_parser.add_argument(
        "--obj", action="store_true", help="also convert .skn meshes to Wavefront OBJ"
    )

    patch_parser = subparsers.add_parser("patch", help="replace entries with files from a directory")
    patch_parser.add_argument(
        "archives", type=Path, nargs="+", help=".raf files or directories searched for them"
    )
    patch_parser.add_argument(
        "--replacements",
        type=Path,
        required=True,
        help="directory of replacement files named after the entries they replace",
    )
    _add_manifest_arguments(patch_parser, required=False)

    fix_parser = subparsers.add_parser(
        "fix-manifest", help="copy archive entry sizes into the release manifest"
    )
    fix_parser.add_argument(
        "archives", type=Path, nargs="+", help=".raf files or directories searched for them"
    )
    _add_manifest_arguments(fix_parser, required=True)

    return parser


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = build_cli()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command == "list":
        matcher = re.compile(args.pattern, re.IGNORECASE) if args.pattern else None
        with ArchiveIndex(args.archive) as archive:
            for entry in archive.entries:
                if matcher is None or matcher.search(entry.name):
                    print(entry.describe())
            print(
                f"{len(archive.entries)} entries in {archive.name} RAF of total size "
                f"{human_readable_size(archive.total_size)}"
            )
    elif args.command == "extract":
        with ArchiveIndex(args.archive) as archive:
            written = extract_entries(archive, args.output, args.pattern, args.obj)
        print(f"Extracted {len(written)} file(s) to {args.output}")
    elif args.command == "patch":
        replacements = collect_replacements(args.replacements)
        if not replacements:
            raise SystemExit(f"no replacement files found in {args.replacements}")
        manifest = _open_manifest(args)
        try:
            for path in _expand_archives(args.archives):
                with ArchiveIndex(path, manifest) as archive:
                    result = archive.patch(replacements)
                if result.changed:
                    print(f"Patched {len(result.replaced)} entry(s) in {archive.name}")
        finally:
            if manifest is not None:
                manifest.close()
    elif args.command == "fix-manifest":
        manifest = _open_manifest(args)
        try:
            changed = 0
            for path in _expand_archives(args.archives):
                with ArchiveIndex(path, manifest) as archive:
                    changed += archive.sync_manifest()
        finally:
            manifest.close()
        print(f"Updated {changed} release manifest record(s)")
    else:  # pragma: no cover - argparse rejects unknown commands
        parser.error("unknown command")


if __name__ == "__main__":
    main()
