"""Skinned mesh (.skn) codec and Wavefront OBJ bridge.

Meshes are stored inside RAF archives as zlib-compressed ``.skn`` payloads.
Only the pieces needed to swap geometry are modelled here: the material
ranges, the 16-bit index buffer and the per-vertex records.  Everything the
codec does not understand (for example the end tab written by version 2
files) is carried through untouched so that ``decode`` followed by
``encode`` reproduces the original bytes.

OBJ files are the editing format.  ``ObjMesh.from_skn`` writes one OBJ
vertex per mesh vertex (position, texture coordinate and normal share a
single index) which lets an edited OBJ be mapped back onto the original
vertex order, keeping bone indices and weights intact.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

SKN_MAGIC = 0x00112233
SUPPORTED_VERSIONS = (0, 1, 2, 4)

SKN_HEADER = struct.Struct("<IHH")  # magic, version, object count
SKN_COUNTS = struct.Struct("<II")  # index count, vertex count
SKN_MATERIAL = struct.Struct("<64s4I")  # name, start vertex, vertex count, start index, index count
SKN_V4_LAYOUT = struct.Struct("<II")  # vertex size, vertex type
SKN_V4_BOUNDS = struct.Struct("<10f")  # bbox min/max, sphere centre + radius
SKN_VERTEX = struct.Struct("<3f4B4f3f2f")
SKN_VERTEX_COLOR = struct.Struct("<4B")

Vec2 = Tuple[float, float]
Vec3 = Tuple[float, float, float]


class SknParsingError(RuntimeError):
    """Raised when a mesh payload does not match the expected layout."""


@dataclass
class SknMaterial:
    name_field: bytes
    start_vertex: int
    vertex_count: int
    start_index: int
    index_count: int

    @property
    def name(self) -> str:
        return self.name_field.split(b"\x00", 1)[0].decode("latin-1")


@dataclass
class SknVertex:
    position: Vec3
    bone_indices: Tuple[int, int, int, int]
    weights: Tuple[float, float, float, float]
    normal: Vec3
    uv: Vec2
    color: Optional[Tuple[int, int, int, int]] = None


@dataclass
class SknMesh:
    version: int
    object_count: int
    materials: List[SknMaterial]
    indices: List[int]
    vertices: List[SknVertex]
    name: str = ""
    v4_flags: int = 0
    vertex_type: int = 0
    bounds: Tuple[float, ...] = ()
    tail: bytes = b""

    @classmethod
    def decode(cls, data: bytes, name: str = "") -> "SknMesh":
        """Parse an uncompressed ``.skn`` payload."""

        try:
            return cls._decode(memoryview(data), name)
        except struct.error as exc:
            raise SknParsingError(f"truncated mesh data in {name or 'skn payload'}") from exc

    @classmethod
    def _decode(cls, view: memoryview, name: str) -> "SknMesh":
        magic, version, object_count = SKN_HEADER.unpack_from(view, 0)
        if magic != SKN_MAGIC:
            raise SknParsingError(f"not a skn mesh (magic=0x{magic:08X}) in {name!r}")
        if version not in SUPPORTED_VERSIONS:
            raise SknParsingError(f"unsupported skn version {version} in {name!r}")
        cursor = SKN_HEADER.size

        materials: List[SknMaterial] = []
        if version > 0:
            (material_count,) = struct.unpack_from("<I", view, cursor)
            cursor += 4
            for _ in range(material_count):
                materials.append(SknMaterial(*SKN_MATERIAL.unpack_from(view, cursor)))
                cursor += SKN_MATERIAL.size

        v4_flags = 0
        if version == 4:
            (v4_flags,) = struct.unpack_from("<I", view, cursor)
            cursor += 4

        index_count, vertex_count = SKN_COUNTS.unpack_from(view, cursor)
        cursor += SKN_COUNTS.size

        vertex_type = 0
        bounds: Tuple[float, ...] = ()
        vertex_size = SKN_VERTEX.size
        if version == 4:
            vertex_size, vertex_type = SKN_V4_LAYOUT.unpack_from(view, cursor)
            cursor += SKN_V4_LAYOUT.size
            bounds = SKN_V4_BOUNDS.unpack_from(view, cursor)
            cursor += SKN_V4_BOUNDS.size
            expected_size = SKN_VERTEX.size + (SKN_VERTEX_COLOR.size if vertex_type else 0)
            if vertex_size != expected_size:
                raise SknParsingError(
                    f"unexpected vertex size {vertex_size} for vertex type {vertex_type} in {name!r}"
                )

        indices = list(struct.unpack_from(f"<{index_count}H", view, cursor))
        cursor += index_count * 2

        vertices: List[SknVertex] = []
        for _ in range(vertex_count):
            values = SKN_VERTEX.unpack_from(view, cursor)
            color = None
            if vertex_size > SKN_VERTEX.size:
                color = SKN_VERTEX_COLOR.unpack_from(view, cursor + SKN_VERTEX.size)
            vertices.append(
                SknVertex(
                    position=values[0:3],
                    bone_indices=values[3:7],
                    weights=values[7:11],
                    normal=values[11:14],
                    uv=values[14:16],
                    color=color,
                )
            )
            cursor += vertex_size

        return cls(
            version=version,
            object_count=object_count,
            materials=materials,
            indices=indices,
            vertices=vertices,
            name=name,
            v4_flags=v4_flags,
            vertex_type=vertex_type,
            bounds=tuple(bounds),
            tail=view[cursor:].tobytes(),
        )

    def encode(self) -> bytes:
        """Serialise the mesh back into ``.skn`` bytes."""

        out = bytearray(SKN_HEADER.pack(SKN_MAGIC, self.version, self.object_count))
        if self.version > 0:
            out.extend(struct.pack("<I", len(self.materials)))
            for material in self.materials:
                out.extend(
                    SKN_MATERIAL.pack(
                        material.name_field,
                        material.start_vertex,
                        material.vertex_count,
                        material.start_index,
                        material.index_count,
                    )
                )
        if self.version == 4:
            out.extend(struct.pack("<I", self.v4_flags))
        out.extend(SKN_COUNTS.pack(len(self.indices), len(self.vertices)))
        if self.version == 4:
            vertex_size = SKN_VERTEX.size + (SKN_VERTEX_COLOR.size if self.vertex_type else 0)
            out.extend(SKN_V4_LAYOUT.pack(vertex_size, self.vertex_type))
            out.extend(SKN_V4_BOUNDS.pack(*self.bounds))

        out.extend(struct.pack(f"<{len(self.indices)}H", *self.indices))
        for vertex in self.vertices:
            out.extend(
                SKN_VERTEX.pack(
                    *vertex.position,
                    *vertex.bone_indices,
                    *vertex.weights,
                    *vertex.normal,
                    *vertex.uv,
                )
            )
            if self.version == 4 and self.vertex_type:
                out.extend(SKN_VERTEX_COLOR.pack(*(vertex.color or (0, 0, 0, 0))))
        out.extend(self.tail)
        return bytes(out)

    def replace_geometry(self, vertices: Sequence["ObjVertex"], indices: Sequence[int]) -> None:
        """Swap positions, normals, texture coordinates and the index buffer.

        Bone indices and weights stay with the original vertices, so
        ``vertices`` must line up one-to-one with ``self.vertices``.
        """

        if len(vertices) != len(self.vertices):
            raise ValueError(
                f"vertex count mismatch: mesh has {len(self.vertices)}, replacement has {len(vertices)}"
            )
        new_indices = [int(index) for index in indices]
        if any(index < 0 or index >= len(self.vertices) for index in new_indices):
            raise ValueError("replacement index buffer references a missing vertex")

        if len(new_indices) != len(self.indices):
            if len(self.materials) > 1:
                raise ValueError(
                    "cannot resize the index buffer of a mesh with more than one material"
                )
            for material in self.materials:
                material.start_index = 0
                material.index_count = len(new_indices)

        for current, replacement in zip(self.vertices, vertices):
            current.position = tuple(float(v) for v in replacement.position)
            current.normal = tuple(float(v) for v in replacement.normal)
            current.uv = tuple(float(v) for v in replacement.uv)
        self.indices = new_indices
        if self.version == 4:
            self.bounds = _compute_bounds(vertex.position for vertex in self.vertices)


def _compute_bounds(positions: Iterable[Vec3]) -> Tuple[float, ...]:
    points = list(positions)
    if not points:
        return (0.0,) * 10
    lo = tuple(min(p[axis] for p in points) for axis in range(3))
    hi = tuple(max(p[axis] for p in points) for axis in range(3))
    centre = tuple((lo[axis] + hi[axis]) / 2 for axis in range(3))
    radius = max(math.dist(centre, p) for p in points)
    return lo + hi + centre + (radius,)


@dataclass
class ObjVertex:
    position: Vec3
    uv: Vec2 = (0.0, 0.0)
    normal: Vec3 = (0.0, 0.0, 0.0)


@dataclass
class ObjMesh:
    """Triangle mesh read from (or written to) a Wavefront OBJ file."""

    vertices: List[ObjVertex] = field(default_factory=list)
    indices: List[int] = field(default_factory=list)
    name: str = ""

    @classmethod
    def from_skn(cls, mesh: SknMesh) -> "ObjMesh":
        vertices = [
            ObjVertex(position=tuple(v.position), uv=tuple(v.uv), normal=tuple(v.normal))
            for v in mesh.vertices
        ]
        return cls(vertices=vertices, indices=list(mesh.indices), name=mesh.name)

    @classmethod
    def load(cls, path: Path) -> "ObjMesh":
        path = Path(path)
        return cls.parse(path.read_text(encoding="utf-8"), name=path.name)

    @classmethod
    def parse(cls, text: str, name: str = "") -> "ObjMesh":
        """Parse OBJ text, keying each vertex on its position index.

        Faces with more than three corners are fan-triangulated.  Texture
        coordinates are flipped vertically to match the mesh convention.
        """

        positions: List[Vec3] = []
        uvs: List[Vec2] = []
        normals: List[Vec3] = []
        slots: Dict[int, ObjVertex] = {}
        indices: List[int] = []

        for line_number, raw_line in enumerate(text.splitlines(), 1):
            parts = raw_line.split()
            if not parts or parts[0].startswith("#"):
                continue
            tag = parts[0]
            try:
                if tag == "v":
                    positions.append(_floats(parts[1:4], 3))
                elif tag == "vt":
                    u, v = _floats(parts[1:3], 2)
                    uvs.append((u, 1.0 - v))
                elif tag == "vn":
                    normals.append(_floats(parts[1:4], 3))
                elif tag == "f":
                    corners = [
                        _resolve_corner(corner, positions, uvs, normals, slots)
                        for corner in parts[1:]
                    ]
                    if len(corners) < 3:
                        raise ValueError("face with fewer than three corners")
                    for i in range(1, len(corners) - 1):
                        indices.extend((corners[0], corners[i], corners[i + 1]))
            except (IndexError, ValueError) as exc:
                raise ValueError(f"{name or 'obj'}:{line_number}: {exc}") from exc

        vertices = [slots.get(i) or ObjVertex(position=p) for i, p in enumerate(positions)]
        return cls(vertices=vertices, indices=indices, name=name)

    def dumps(self) -> str:
        lines = [f"# {self.name}"] if self.name else []
        for vertex in self.vertices:
            lines.append("v " + " ".join(_fmt(c) for c in vertex.position))
        for vertex in self.vertices:
            lines.append(f"vt {_fmt(vertex.uv[0])} {_fmt(1.0 - vertex.uv[1])}")
        for vertex in self.vertices:
            lines.append("vn " + " ".join(_fmt(c) for c in vertex.normal))
        for i in range(0, len(self.indices) - 2, 3):
            corners = (self.indices[i] + 1, self.indices[i + 1] + 1, self.indices[i + 2] + 1)
            lines.append("f " + " ".join(f"{c}/{c}/{c}" for c in corners))
        return "\n".join(lines) + "\n"

    def save(self, path: Path) -> None:
        Path(path).write_text(self.dumps(), encoding="utf-8")


def _floats(values: Sequence[str], count: int) -> tuple:
    if len(values) < count:
        raise ValueError(f"expected {count} numbers, got {len(values)}")
    return tuple(float(v) for v in values[:count])


def _fmt(value: float) -> str:
    # 9 significant digits round-trip any float32
    return format(value, ".9g")


def _obj_index(token: str, count: int) -> int:
    index = int(token)
    if index < 0:
        index += count
    else:
        index -= 1
    if index < 0 or index >= count:
        raise ValueError(f"index {token} out of range")
    return index


def _resolve_corner(
    corner: str,
    positions: List[Vec3],
    uvs: List[Vec2],
    normals: List[Vec3],
    slots: Dict[int, ObjVertex],
) -> int:
    fields = corner.split("/")
    position_index = _obj_index(fields[0], len(positions))
    vertex = ObjVertex(position=positions[position_index])
    if len(fields) > 1 and fields[1]:
        vertex.uv = uvs[_obj_index(fields[1], len(uvs))]
    if len(fields) > 2 and fields[2]:
        vertex.normal = normals[_obj_index(fields[2], len(normals))]
    slots[position_index] = vertex
    return position_index
