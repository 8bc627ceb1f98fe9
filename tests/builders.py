"""Synthetic RAF archive and release manifest fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import rafpatch
from skn import SknMaterial, SknMesh, SknVertex

RAF_MAGIC = 0x18BE0EF0


def build_raf(
    directory: Path,
    payloads: Sequence[Tuple[str, bytes]],
    *,
    name: str = "Archive_1.raf",
    reverse_records: bool = False,
    reverse_strings: bool = False,
) -> Path:
    """Write ``name`` and ``name.dat`` holding ``payloads`` back to back.

    ``reverse_records`` writes the file list in the opposite order to the
    data file; ``reverse_strings`` stores the paths in the string table in
    reverse so record ``i`` points at string ``count - 1 - i``.
    """

    data = bytearray()
    records: List[Tuple[str, int, int]] = []
    for path, payload in payloads:
        records.append((path, len(data), len(payload)))
        data.extend(payload)

    count = len(records)
    string_order = list(range(count))
    if reverse_strings:
        string_order.reverse()
    # string slot -> record
    strings = [records[i][0] for i in string_order]
    string_index_of = {record_index: slot for slot, record_index in enumerate(string_order)}

    file_list_offset = rafpatch.RAF_HEADER.size
    string_table_offset = file_list_offset + rafpatch.RAF_COUNT.size + count * rafpatch.RAF_ENTRY_STRUCT.size

    encoded = [path.encode("utf-8") + b"\x00" for path in strings]
    relative = rafpatch.RAF_STRING_TABLE_HEADER.size + count * rafpatch.RAF_STRING_ENTRY.size
    string_entries = bytearray()
    for blob in encoded:
        string_entries.extend(rafpatch.RAF_STRING_ENTRY.pack(relative, len(blob)))
        relative += len(blob)

    index = bytearray(
        rafpatch.RAF_HEADER.pack(RAF_MAGIC, 1, 0, file_list_offset, string_table_offset)
    )
    index.extend(rafpatch.RAF_COUNT.pack(count))
    order = list(range(count))
    if reverse_records:
        order.reverse()
    for record_index in order:
        path, offset, size = records[record_index]
        index.extend(
            rafpatch.RAF_ENTRY_STRUCT.pack(
                rafpatch.raf_hash(path), offset, size, string_index_of[record_index]
            )
        )
    index.extend(rafpatch.RAF_STRING_TABLE_HEADER.pack(relative, count))
    index.extend(string_entries)
    index.extend(b"".join(encoded))

    archive_path = Path(directory) / name
    archive_path.write_bytes(bytes(index))
    archive_path.with_name(name + ".dat").write_bytes(bytes(data))
    return archive_path


def build_manifest(
    path: Path,
    directories: Sequence[Tuple[str, int, int, int, int]],
    files: Sequence[Tuple[str, int, int]],
    *,
    magic: int = rafpatch.MANIFEST_MAGIC,
    file_type: int = rafpatch.MANIFEST_FILE_TYPE,
) -> Path:
    """Write a release manifest.

    ``directories`` holds ``(name, subdir_index, subdir_count, file_index,
    file_count)`` tuples, ``files`` holds ``(name, size, compressed_size)``.
    An empty name maps to string 0.
    """

    strings: List[str] = [""]
    lookup: Dict[str, int] = {"": 0}

    def intern(value: str) -> int:
        if value not in lookup:
            lookup[value] = len(strings)
            strings.append(value)
        return lookup[value]

    body = bytearray(
        rafpatch.MANIFEST_HEADER.pack(magic, file_type, len(directories) + len(files), 0x0105)
    )
    body.extend(rafpatch.MANIFEST_COUNT.pack(len(directories)))
    for name, subdir_index, subdir_count, file_index, file_count in directories:
        body.extend(
            rafpatch.MANIFEST_DIR_STRUCT.pack(
                intern(name), subdir_index, subdir_count, file_index, file_count
            )
        )
    body.extend(rafpatch.MANIFEST_COUNT.pack(len(files)))
    for name, size, compressed_size in files:
        body.extend(
            rafpatch.MANIFEST_FILE_STRUCT.pack(
                intern(name), 7, b"\xAA" * 16, 0, size, compressed_size, 0, 0
            )
        )

    blob = b"".join(value.encode("utf-8") + b"\x00" for value in strings)
    body.extend(rafpatch.MANIFEST_STRING_TABLE_HEADER.pack(len(strings), len(blob)))
    body.extend(blob)

    path = Path(path)
    path.write_bytes(bytes(body))
    return path


def sample_mesh(version: int = 1, vertex_type: int = 0) -> SknMesh:
    """A unit quad made of two triangles with one material."""

    corners = [(0.0, 0.0, 0.0), (2.0, 0.0, 0.0), (2.0, 2.0, 0.0), (0.0, 2.0, 0.0)]
    uvs = [(0.0, 1.0), (1.0, 1.0), (1.0, 0.0), (0.0, 0.0)]
    vertices = [
        SknVertex(
            position=corner,
            bone_indices=(i, 0, 0, 0),
            weights=(1.0, 0.0, 0.0, 0.0),
            normal=(0.0, 0.0, 1.0),
            uv=uv,
            color=(255, 128, i, 0) if vertex_type else None,
        )
        for i, (corner, uv) in enumerate(zip(corners, uvs))
    ]
    materials = []
    if version > 0:
        materials.append(SknMaterial(b"body".ljust(64, b"\x00"), 0, 4, 0, 6))
    return SknMesh(
        version=version,
        object_count=1,
        materials=materials,
        indices=[0, 1, 2, 0, 2, 3],
        vertices=vertices,
        v4_flags=0,
        vertex_type=vertex_type,
        bounds=(0.0, 0.0, 0.0, 2.0, 2.0, 0.0, 1.0, 1.0, 0.0, 1.5) if version == 4 else (),
    )
