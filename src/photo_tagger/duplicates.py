"""Near-duplicate grouping over 64-bit difference hashes.

Each hash is split into ``bands`` bit segments and indexed once per band.
A lookup probes the exact segment of every band plus every segment within
``probe_radius`` bit flips of it, so only hashes sharing a (probed) bucket
are ever compared. Pairs within the Hamming threshold are merged with a
disjoint-set structure and the connected components become groups.

The search is approximate. Two hashes are guaranteed to meet in a bucket
when their distance is at most ``bands * (probe_radius + 1) - 1``; beyond
that a pair is found only when some band happens to differ in no more than
``probe_radius`` bits. Raising ``bands`` or ``probe_radius`` trades speed
for recall.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Hashable, Iterator, Mapping
from dataclasses import dataclass
from itertools import combinations
from typing import Generic, TypeVar

from photo_tagger.hasher import DHASH_BITS, hamming_distance
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "duplicates"})

IdT = TypeVar("IdT", bound=Hashable)


@dataclass(frozen=True)
class DuplicateGroup(Generic[IdT]):
    """A connected set of near-identical photos."""

    representative: IdT
    members: tuple[IdT, ...]

    @property
    def size(self) -> int:
        return len(self.members)


class UnionFind(Generic[IdT]):
    """Disjoint sets with path halving and union by size."""

    def __init__(self) -> None:
        self._parent: dict[IdT, IdT] = {}
        self._size: dict[IdT, int] = {}

    def add(self, item: IdT) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._size[item] = 1

    def find(self, item: IdT) -> IdT:
        parent = self._parent
        while parent[item] != item:
            parent[item] = parent[parent[item]]
            item = parent[item]
        return item

    def union(self, a: IdT, b: IdT) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]
        return True

    def components(self) -> list[list[IdT]]:
        grouped: dict[IdT, list[IdT]] = defaultdict(list)
        for item in self._parent:
            grouped[self.find(item)].append(item)
        return list(grouped.values())


class HashBucketIndex(Generic[IdT]):
    """Band-segmented bucket index with multi-probe lookups.

    Example:
        >>> index = HashBucketIndex(bands=4, probe_radius=1)
        >>> index.add("a", 0x0F)
        >>> sorted(index.candidates(0x0E))
        ['a']
    """

    def __init__(self, bands: int = 4, probe_radius: int = 1) -> None:
        if not 1 <= bands <= DHASH_BITS:
            raise ValueError(f"bands must be between 1 and {DHASH_BITS}, got {bands}")
        if probe_radius < 0:
            raise ValueError(f"probe_radius must be non-negative, got {probe_radius}")

        self.bands = bands
        self.probe_radius = probe_radius
        # Spread any remainder bits over the leading bands.
        base, extra = divmod(DHASH_BITS, bands)
        self._widths = [base + (1 if band < extra else 0) for band in range(bands)]
        self._shifts = [sum(self._widths[band + 1 :]) for band in range(bands)]
        self._buckets: dict[int, list[IdT]] = defaultdict(list)
        self._count = 0

    def __len__(self) -> int:
        return self._count

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def _segments(self, value: int) -> Iterator[tuple[int, int, int]]:
        for band, (width, shift) in enumerate(zip(self._widths, self._shifts)):
            yield band, width, (value >> shift) & ((1 << width) - 1)

    def _probe_keys(self, value: int) -> Iterator[int]:
        for band, width, segment in self._segments(value):
            prefix = band << 32
            yield prefix | segment
            for radius in range(1, min(self.probe_radius, width) + 1):
                for bits in combinations(range(width), radius):
                    flipped = segment
                    for bit in bits:
                        flipped ^= 1 << bit
                    yield prefix | flipped

    def add(self, item: IdT, value: int) -> None:
        for band, _width, segment in self._segments(value):
            self._buckets[(band << 32) | segment].append(item)
        self._count += 1

    def candidates(self, value: int) -> set[IdT]:
        """Return every indexed item sharing a probed bucket with ``value``."""

        found: set[IdT] = set()
        for key in self._probe_keys(value):
            bucket = self._buckets.get(key)
            if bucket:
                found.update(bucket)
        return found


def group_duplicates(
    hashes: Mapping[IdT, int],
    threshold: int = 8,
    bands: int = 4,
    probe_radius: int = 1,
    min_group_size: int = 2,
) -> list[DuplicateGroup[IdT]]:
    """Group ``hashes`` into near-duplicate sets.

    Args:
        hashes: Photo identifier to unsigned 64-bit dHash.
        threshold: Maximum Hamming distance for two hashes to be linked.
        bands: Number of bit segments each hash is indexed under.
        probe_radius: Bit flips probed per segment on lookup.
        min_group_size: Smallest component reported. ``1`` also returns singletons.

    Returns:
        Groups sorted by representative, each with sorted members and the
        smallest identifier as representative.
    """

    if threshold < 0:
        raise ValueError(f"threshold must be non-negative, got {threshold}")

    index: HashBucketIndex[IdT] = HashBucketIndex(bands=bands, probe_radius=probe_radius)
    sets: UnionFind[IdT] = UnionFind()
    compared = 0

    # Items are matched against everything indexed before them, so each pair is checked once.
    for item in sorted(hashes):
        value = hashes[item]
        sets.add(item)
        for other in index.candidates(value):
            compared += 1
            if hamming_distance(value, hashes[other]) <= threshold:
                sets.union(item, other)
        index.add(item, value)

    groups = []
    for component in sets.components():
        if len(component) < max(1, min_group_size):
            continue
        members = tuple(sorted(component))
        groups.append(DuplicateGroup(representative=members[0], members=members))
    groups.sort(key=lambda group: group.representative)

    LOGGER.info(
        "duplicate_grouping_done",
        extra={
            "hashes": len(hashes),
            "threshold": threshold,
            "comparisons": compared,
            "buckets": index.bucket_count,
            "groups": len(groups),
        },
    )
    return groups


__all__ = ["DuplicateGroup", "HashBucketIndex", "UnionFind", "group_duplicates"]
