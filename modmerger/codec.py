"""Nested container codec.

Containers are flattened into an arena of leaves addressed by virtual path
(``outer.pack//inner.pack//leaf.json``) plus explicit nesting metadata.
Two layers are understood:

* ``PACK`` archives: a little-endian header, a name table and aligned
  payloads.
* ``ZLB1`` compression: a transparent zlib wrapper that can sit around a
  container or a single leaf.

``recompose`` rebuilds a container from its leaves and metadata.  Any subtree
whose leaves are byte-identical to the decomposition is emitted from the
recorded original bytes, so untouched input round-trips exactly.
"""

from __future__ import annotations

import hashlib
import struct
import zlib
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Tuple

from .errors import ContainerError
from .formats import format_for_path
from .text_utils import NEST_SEPARATOR, join_virtual_path

PACK_MAGIC = b"PACK"
PACK_VERSION = 1
PACK_HEADER = struct.Struct("<4sHHII")  # magic, version, flags, count, alignment
PACK_NAME_LEN = struct.Struct("<H")
PACK_ENTRY = struct.Struct("<II")  # offset, size
DEFAULT_ALIGNMENT = 8

ZLIB_MAGIC = b"ZLB1"
ZLIB_HEADER = struct.Struct("<4sB3xI")  # magic, level, raw size
DEFAULT_ZLIB_LEVEL = 6

MAX_DEPTH = 32


def _digest(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def _align(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


@dataclass(slots=True)
class Leaf:
    virtual_path: str
    data: bytes
    format_hint: str

    def __iter__(self):
        return iter((self.virtual_path, self.data, self.format_hint))


@dataclass(slots=True)
class LeafNode:
    compression: int | None
    digest: str
    original: bytes | None = None


@dataclass(slots=True)
class ContainerNode:
    path: str
    version: int
    flags: int
    alignment: int
    children: List[str]
    compression: int | None
    original: bytes
    child_digests: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class NestingMetadata:
    root: str
    containers: Dict[str, ContainerNode] = field(default_factory=dict)
    leaves: Dict[str, LeafNode] = field(default_factory=dict)

    @property
    def root_is_container(self) -> bool:
        return self.root in self.containers


@dataclass(slots=True)
class DecomposedContainer:
    leaves: List[Leaf]
    metadata: NestingMetadata
    errors: List[ContainerError] = field(default_factory=list)
    _index: Dict[str, bytes] | None = field(default=None, repr=False, compare=False)

    def __iter__(self) -> Iterator[Leaf]:
        return iter(self.leaves)

    def __len__(self) -> int:
        return len(self.leaves)

    def leaf_map(self) -> Dict[str, bytes]:
        return {leaf.virtual_path: leaf.data for leaf in self.leaves}

    def get(self, virtual_path: str) -> bytes | None:
        if self._index is None:
            self._index = self.leaf_map()
        return self._index.get(virtual_path)


# --- wire format -----------------------------------------------------------


def is_compressed(data: bytes) -> bool:
    return data[:4] == ZLIB_MAGIC


def is_pack(data: bytes) -> bool:
    return data[:4] == PACK_MAGIC


def compress(data: bytes, level: int = DEFAULT_ZLIB_LEVEL) -> bytes:
    return ZLIB_HEADER.pack(ZLIB_MAGIC, level, len(data)) + zlib.compress(data, level)


def decompress(data: bytes, path: str = "") -> Tuple[bytes, int]:
    """Return the payload and the compression level recorded in the header."""

    if len(data) < ZLIB_HEADER.size:
        raise ContainerError(path, "truncated compression header")
    magic, level, raw_size = ZLIB_HEADER.unpack_from(data)
    if magic != ZLIB_MAGIC:
        raise ContainerError(path, "not a compressed payload")
    try:
        payload = zlib.decompress(data[ZLIB_HEADER.size:])
    except zlib.error as exc:
        raise ContainerError(path, f"corrupt compressed payload: {exc}") from exc
    if len(payload) != raw_size:
        raise ContainerError(path, f"expected {raw_size} bytes after decompression, got {len(payload)}")
    return payload, level


def parse_pack(data: bytes, path: str = "") -> Tuple[int, int, int, List[Tuple[str, bytes]]]:
    """Parse a PACK archive into ``(version, flags, alignment, entries)``."""

    if len(data) < PACK_HEADER.size:
        raise ContainerError(path, "truncated archive header")
    magic, version, flags, count, alignment = PACK_HEADER.unpack_from(data)
    if magic != PACK_MAGIC:
        raise ContainerError(path, f"unknown container magic {magic!r}")
    if version > PACK_VERSION:
        raise ContainerError(path, f"unsupported archive version {version}")

    entries: List[Tuple[str, bytes]] = []
    seen: set[str] = set()
    cursor = PACK_HEADER.size
    for index in range(count):
        if cursor + PACK_NAME_LEN.size > len(data):
            raise ContainerError(path, f"name table truncated at entry {index}")
        (name_len,) = PACK_NAME_LEN.unpack_from(data, cursor)
        cursor += PACK_NAME_LEN.size
        raw_name = data[cursor:cursor + name_len]
        if len(raw_name) != name_len:
            raise ContainerError(path, f"name table truncated at entry {index}")
        cursor += name_len
        if cursor + PACK_ENTRY.size > len(data):
            raise ContainerError(path, f"entry table truncated at entry {index}")
        offset, size = PACK_ENTRY.unpack_from(data, cursor)
        cursor += PACK_ENTRY.size
        if offset + size > len(data):
            raise ContainerError(path, f"entry {index} points outside the archive")
        try:
            name = raw_name.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ContainerError(path, f"entry {index} has an invalid name") from exc
        if not name or name in seen:
            raise ContainerError(path, f"entry {index} has an empty or duplicate name {name!r}")
        seen.add(name)
        entries.append((name, data[offset:offset + size]))
    return version, flags, alignment, entries


def build_pack(
    entries: List[Tuple[str, bytes]],
    alignment: int = DEFAULT_ALIGNMENT,
    version: int = PACK_VERSION,
    flags: int = 0,
) -> bytes:
    encoded = [(name.encode("utf-8"), payload) for name, payload in entries]
    table_size = sum(PACK_NAME_LEN.size + len(name) + PACK_ENTRY.size for name, _ in encoded)
    cursor = _align(PACK_HEADER.size + table_size, alignment)

    offsets: List[int] = []
    for _, payload in encoded:
        offsets.append(cursor)
        cursor = _align(cursor + len(payload), alignment)

    out = bytearray(PACK_HEADER.pack(PACK_MAGIC, version, flags, len(encoded), alignment))
    for (name, payload), offset in zip(encoded, offsets):
        out += PACK_NAME_LEN.pack(len(name))
        out += name
        out += PACK_ENTRY.pack(offset, len(payload))
    for (_, payload), offset in zip(encoded, offsets):
        out += b"\x00" * (offset - len(out))
        out += payload
    if encoded:
        out += b"\x00" * (_align(len(out), alignment) - len(out))
    return bytes(out)


# --- decomposition ---------------------------------------------------------


def decompose(raw: bytes, format_hint: str | None = None, path: str = "") -> DecomposedContainer:
    """Flatten ``raw`` into leaves.

    A top-level container that cannot be read raises :class:`ContainerError`.
    Nested containers that cannot be read are kept as opaque leaves and the
    problem is recorded in ``errors``.  A file that is not a container at all
    decomposes into a single leaf named ``path``.
    """

    hint = format_hint or format_for_path(path)
    result = DecomposedContainer(leaves=[], metadata=NestingMetadata(root=path))

    payload, level = raw, None
    if is_compressed(raw):
        payload, level = decompress(raw, path)
    if hint == "pack" or is_pack(payload):
        _decompose_pack(payload, level, raw, path, result, depth=0)
    else:
        result.metadata.leaves[path] = LeafNode(
            compression=level, digest=_digest(payload), original=raw if level is not None else None
        )
        result.leaves.append(Leaf(path, payload, hint))
    return result


def _decompose_pack(
    payload: bytes,
    level: int | None,
    original: bytes,
    path: str,
    result: DecomposedContainer,
    depth: int,
) -> None:
    if depth > MAX_DEPTH:
        raise ContainerError(path, "containers nested too deeply")
    version, flags, alignment, entries = parse_pack(payload, path)
    node = ContainerNode(
        path=path,
        version=version,
        flags=flags,
        alignment=alignment,
        children=[name for name, _ in entries],
        compression=level,
        original=original,
        child_digests={name: _digest(data) for name, data in entries},
    )
    result.metadata.containers[path] = node

    for name, child_raw in entries:
        child_path = join_virtual_path(path, name) if path else name
        _decompose_child(child_raw, child_path, result, depth + 1)


def _decompose_child(child_raw: bytes, child_path: str, result: DecomposedContainer, depth: int) -> None:
    child_payload, child_level = child_raw, None
    if is_compressed(child_raw):
        try:
            child_payload, child_level = decompress(child_raw, child_path)
        except ContainerError as exc:
            result.errors.append(exc)
            _record_leaf(child_raw, None, child_path, result)
            return
    if is_pack(child_payload):
        # Decompose into a scratch result so a broken subtree leaves no trace.
        subtree = DecomposedContainer(leaves=[], metadata=NestingMetadata(root=child_path))
        try:
            _decompose_pack(child_payload, child_level, child_raw, child_path, subtree, depth)
        except ContainerError as exc:
            result.errors.append(exc)
            _record_leaf(child_raw, None, child_path, result)
            return
        result.leaves.extend(subtree.leaves)
        result.metadata.containers.update(subtree.metadata.containers)
        result.metadata.leaves.update(subtree.metadata.leaves)
        result.errors.extend(subtree.errors)
        return
    _record_leaf(child_payload, child_level, child_path, result, child_raw)


def _record_leaf(
    payload: bytes,
    level: int | None,
    path: str,
    result: DecomposedContainer,
    original: bytes | None = None,
) -> None:
    result.metadata.leaves[path] = LeafNode(
        compression=level,
        digest=_digest(payload),
        original=original if level is not None else None,
    )
    result.leaves.append(Leaf(path, payload, format_for_path(path)))


# --- recomposition ---------------------------------------------------------


def recompose(leaves: Mapping[str, bytes], metadata: NestingMetadata) -> bytes:
    """Rebuild the root container from its leaf payloads.

    ``leaves`` must hold every leaf recorded in ``metadata``; extra entries
    whose parent is a known container are appended to it in name order.
    """

    additions: Dict[str, List[str]] = {}
    for virtual_path in leaves:
        if virtual_path in metadata.leaves:
            continue
        parent, _, name = virtual_path.rpartition(NEST_SEPARATOR)
        if parent not in metadata.containers:
            raise ContainerError(virtual_path, "no container to hold the new entry")
        additions.setdefault(parent, []).append(name)

    if not metadata.root_is_container:
        return _encode_leaf(metadata.root, leaves, metadata)
    return _encode_container(metadata.root, leaves, metadata, additions)


def _encode_leaf(path: str, leaves: Mapping[str, bytes], metadata: NestingMetadata) -> bytes:
    if path not in leaves:
        raise ContainerError(path, "missing leaf payload")
    data = leaves[path]
    info = metadata.leaves.get(path)
    if info is None or info.compression is None:
        return data
    if info.original is not None and _digest(data) == info.digest:
        return info.original
    return compress(data, info.compression)


def _encode_container(
    path: str,
    leaves: Mapping[str, bytes],
    metadata: NestingMetadata,
    additions: Mapping[str, List[str]],
) -> bytes:
    node = metadata.containers[path]
    entries: List[Tuple[str, bytes]] = []
    unchanged = path not in additions
    for name in [*node.children, *sorted(additions.get(path, []))]:
        child_path = join_virtual_path(path, name) if path else name
        if child_path in metadata.containers:
            child_raw = _encode_container(child_path, leaves, metadata, additions)
        else:
            child_raw = _encode_leaf(child_path, leaves, metadata)
        if unchanged and _digest(child_raw) != node.child_digests.get(name):
            unchanged = False
        entries.append((name, child_raw))

    if unchanged:
        return node.original
    payload = build_pack(entries, alignment=node.alignment, version=node.version, flags=node.flags)
    if node.compression is not None:
        return compress(payload, node.compression)
    return payload


__all__ = [
    "Leaf",
    "LeafNode",
    "ContainerNode",
    "NestingMetadata",
    "DecomposedContainer",
    "build_pack",
    "parse_pack",
    "compress",
    "decompress",
    "decompose",
    "recompose",
    "is_pack",
    "is_compressed",
]
