from __future__ import annotations

import random

import pytest

from photo_tagger.duplicates import HashBucketIndex, UnionFind, group_duplicates
from photo_tagger.hasher import hamming_distance

ALL_ONES = (1 << 64) - 1


def test_transitive_chain_forms_one_group() -> None:
    """A~B and B~C join A, B and C even though A and C are too far apart; D stays alone."""

    hashes = {"A": 0, "B": 0b1111, "C": 0xFF, "D": ALL_ONES}
    assert hamming_distance(hashes["A"], hashes["C"]) > 5

    groups = group_duplicates(hashes, threshold=5, min_group_size=1)

    assert [(group.representative, group.members) for group in groups] == [
        ("A", ("A", "B", "C")),
        ("D", ("D",)),
    ]


def test_singletons_are_omitted_by_default() -> None:
    groups = group_duplicates({1: 0, 2: 0b11, 3: ALL_ONES}, threshold=8)

    assert len(groups) == 1
    assert groups[0].representative == 1
    assert groups[0].members == (1, 2)
    assert groups[0].size == 2


def test_grouping_is_deterministic_regardless_of_input_order() -> None:
    rng = random.Random(3)
    base = [rng.getrandbits(64) for _ in range(20)]
    hashes: dict[int, int] = {}
    for idx, value in enumerate(base):
        hashes[idx * 3] = value
        hashes[idx * 3 + 1] = value ^ (1 << rng.randrange(64))
        hashes[idx * 3 + 2] = rng.getrandbits(64)

    shuffled_keys = list(hashes)
    rng.shuffle(shuffled_keys)
    shuffled = {key: hashes[key] for key in shuffled_keys}

    first = group_duplicates(hashes, threshold=4)
    second = group_duplicates(shuffled, threshold=4)

    assert first == second
    assert [group.representative for group in first] == sorted(group.representative for group in first)
    for idx in range(20):
        assert any(group.members[:2] == (idx * 3, idx * 3 + 1) for group in first)


def test_pairs_within_guaranteed_radius_are_found() -> None:
    """Seven flipped bits spread over four bands always leave one band within one flip."""

    rng = random.Random(11)
    for _ in range(50):
        value = rng.getrandbits(64)
        flipped = value
        for bit in rng.sample(range(64), 7):
            flipped ^= 1 << bit
        groups = group_duplicates({"x": value, "y": flipped}, threshold=8, bands=4, probe_radius=1)
        assert len(groups) == 1


def test_bucket_index_only_returns_bucket_sharing_items() -> None:
    index: HashBucketIndex[str] = HashBucketIndex(bands=4, probe_radius=0)
    index.add("near", 0x0000_0000_0000_00FF)
    index.add("far", ALL_ONES)

    assert index.candidates(0x0000_0000_0000_00FE) == {"near"}
    assert len(index) == 2


def test_bucket_index_rejects_bad_parameters() -> None:
    with pytest.raises(ValueError):
        HashBucketIndex(bands=0)
    with pytest.raises(ValueError):
        HashBucketIndex(probe_radius=-1)
    with pytest.raises(ValueError):
        group_duplicates({1: 0}, threshold=-1)


def test_union_find_merges_components() -> None:
    sets: UnionFind[int] = UnionFind()
    for item in range(5):
        sets.add(item)

    assert sets.union(0, 1)
    assert sets.union(3, 4)
    assert not sets.union(1, 0)
    assert sorted(sorted(component) for component in sets.components()) == [[0, 1], [2], [3, 4]]
