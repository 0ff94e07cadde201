"""An immutable patricia tree over byte strings for matching stream prefixes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .buffer import _read_full


def _split_prefix(keys: list[bytes]) -> tuple[bytes, list[bytes]]:
    """Split off the prefix shared by all keys."""
    if not keys or not keys[0]:
        return b"", keys
    if len(keys) == 1:
        return keys[0], [b""]
    common = bytearray()
    for column in zip(*keys):
        if any(byte != column[0] for byte in column):
            break
        common.append(column[0])
    return bytes(common), [key[len(common):] for key in keys]


@dataclass
class _Node:
    prefix: bytes
    terminal: bool = False
    children: dict[int, _Node] = field(default_factory=dict)

    @classmethod
    def build(cls, keys: list[bytes]) -> _Node:
        if not keys:
            return cls(b"", terminal=True)
        if len(keys) == 1:
            return cls(keys[0], terminal=True)

        prefix, rests = _split_prefix(keys)
        node = cls(prefix)
        groups: dict[int, list[bytes]] = {}
        for rest in rests:
            if not rest:
                node.terminal = True
                continue
            groups.setdefault(rest[0], []).append(rest[1:])
        node.children = {first: cls.build(group) for first, group in groups.items()}
        return node

    def match(self, data: bytes, prefix: bool) -> bool:
        node = self
        while True:
            length = len(node.prefix)
            if data[:length] != node.prefix:
                return False
            if node.terminal and (prefix or length == len(data)):
                return True
            if length >= len(data):
                return False
            child = node.children.get(data[length])
            if child is None:
                return False
            data = data[length + 1:]
            node = child


class PatriciaTree:
    """A set of byte strings that can be matched against a stream's start."""

    def __init__(self, *keys: str | bytes) -> None:
        encoded = [key.encode() if isinstance(key, str) else bytes(key) for key in keys]
        self._root = _Node.build(encoded)
        self._max_depth = max(map(len, encoded), default=0) + 1

    def match(self, reader: Any) -> bool:
        """Whether the whole stream equals one of the keys."""
        return self._root.match(_read_full(reader, self._max_depth), False)

    def match_prefix(self, reader: Any) -> bool:
        """Whether the stream starts with one of the keys."""
        return self._root.match(_read_full(reader, self._max_depth), True)