import pytest

from hemidb.bfgd_models import L2BTCFinality, L2Keystone
from hemidb.finality import (
    canonical_chain_tip_l2_block_number,
    l2_btc_finality_by_l2_keystone_abrev_hash,
    l2_btc_finality_most_recent,
    merge_finalities,
    next_assumed_unpublished_finalities,
    next_published_finalities,
)


def fill_out_bytes(prefix, size):
    data = prefix.encode()
    return data + b"_" * max(0, size - len(data))


PARENT = fill_out_bytes("parentephash", 32)
PREV = fill_out_bytes("prevkeystoneephash", 32)
STATE = fill_out_bytes("stateroot", 32)
EP = fill_out_bytes("ephash", 32)


def abrev(l2):
    return fill_out_bytes(f"mockhash{l2}", 32)


def block_hash(height):
    return fill_out_bytes(f"block{height}", 32)


def finality_row(l2, height, pub_hash=b"", effective=0, tip=0):
    if pub_hash == b"":
        pub_hash = block_hash(height)
    return (pub_hash, height, abrev(l2), 11, l2, PARENT, PREV, STATE, EP, 1, effective, tip)


def unpublished_row(l2):
    return (None, 0, abrev(l2), 11, l2, PARENT, PREV, STATE, EP, 1, 0, 4)


def finality(l2, height):
    return L2BTCFinality(
        l2_keystone=L2Keystone(hash=abrev(l2), l2_block_number=l2),
        btc_pub_height=height,
    )


class FakeDb:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def query(self, sql, params=()):
        self.calls.append((sql, tuple(params)))
        return self.responses.pop(0)


def test_canonical_tip_found():
    db = FakeDb([(1003,)])
    assert canonical_chain_tip_l2_block_number(db) == 1003


def test_canonical_tip_missing():
    db = FakeDb([])
    assert canonical_chain_tip_l2_block_number(db) is None


def test_next_published_converts_rows():
    db = FakeDb([finality_row(1001, 2, effective=2, tip=4)])
    result = next_published_finalities(db, 1003, 10)
    assert len(result) == 1
    f = result[0]
    assert f.btc_pub_height == 2
    assert f.btc_pub_header_hash == block_hash(2)
    assert f.effective_height == 2
    assert f.btc_tip_height == 4
    assert f.l2_keystone == L2Keystone(
        hash=abrev(1001), version=1, l1_block_number=11, l2_block_number=1001,
        parent_ep_hash=PARENT, prev_keystone_ep_hash=PREV, state_root=STATE, ep_hash=EP,
    )
    assert db.calls[0][1] == (1003, 10)


def test_next_assumed_unpublished_sets_minus_one():
    db = FakeDb([unpublished_row(1002), unpublished_row(1001)])
    result = next_assumed_unpublished_finalities(db, 1003, 5, (1003, 1000))
    assert [f.btc_pub_height for f in result] == [-1, -1]
    assert [f.btc_pub_header_hash for f in result] == [None, None]
    assert db.calls[0][1] == (1003, [1003, 1000], 5)


def test_merge_interleaves_unconfirmed():
    published = [finality(1003, 4), finality(1001, 2), finality(1000, 1)]
    unpublished = [finality(n, -1) for n in (1003, 1002, 1001, 1000)]
    result = merge_finalities(published, unpublished, 1003, 100)
    assert [f.btc_pub_height for f in result] == [4, -1, 2, 1]
    assert [f.l2_keystone.l2_block_number for f in result] == [1003, 1002, 1001, 1000]


def test_merge_respects_limit():
    published = [finality(n, n - 999) for n in (1003, 1002, 1001)]
    result = merge_finalities(published, [], 1003, 2)
    assert [f.l2_keystone.l2_block_number for f in result] == [1003, 1002]


def test_merge_stops_at_block_zero():
    published = [finality(1, 5), finality(0, 4)]
    unpublished = [finality(0, -1)]
    result = merge_finalities(published, unpublished, 1, 100)
    assert [(f.l2_keystone.l2_block_number, f.btc_pub_height) for f in result] == [
        (1, 5), (0, 4),
    ]


def test_merge_empty():
    assert merge_finalities([], [], 10, 100) == []


def test_merge_skips_unpublished_above_tip():
    unpublished = [finality(20, -1), finality(5, -1)]
    result = merge_finalities([], unpublished, 10, 100)
    assert [f.l2_keystone.l2_block_number for f in result] == [5]


def test_most_recent_publications_in_order():
    db = FakeDb(
        [(1003,)],
        [finality_row(1003, 4), finality_row(1002, 3), finality_row(1001, 2),
         finality_row(1000, 1)],
        [],
    )
    result = l2_btc_finality_most_recent(db, 100)
    assert [f.btc_pub_height for f in result] == [4, 3, 2, 1]


def test_most_recent_publications_unconfirmed():
    db = FakeDb(
        [(1003,)],
        [finality_row(1003, 4), finality_row(1001, 2), finality_row(1000, 1)],
        [unpublished_row(n) for n in (1003, 1002, 1001, 1000)],
    )
    result = l2_btc_finality_most_recent(db, 100)
    assert [f.btc_pub_height for f in result] == [4, -1, 2, 1]
    assert db.calls[1][1] == (1003, 100)
    assert db.calls[2][1] == (1003, [1003, 1001, 1000], 100)


def test_most_recent_limit_applied():
    db = FakeDb(
        [(1001,)],
        [finality_row(1001, 10002), finality_row(1000, 10001)],
        [unpublished_row(1001), unpublished_row(1000)],
    )
    result = l2_btc_finality_most_recent(db, 1)
    assert len(result) == 1
    assert result[0].btc_pub_header_hash == block_hash(10002)


def test_most_recent_no_tip():
    db = FakeDb([])
    assert l2_btc_finality_most_recent(db, 10) == []
    assert len(db.calls) == 1


def test_most_recent_limit_too_large():
    db = FakeDb()
    with pytest.raises(ValueError, match="greater than 100"):
        l2_btc_finality_most_recent(db, 101)
    assert db.calls == []


def test_by_abrev_hash_published():
    db = FakeDb([finality_row(646465, 8988)])
    result = l2_btc_finality_by_l2_keystone_abrev_hash(db, [abrev(646465)])
    assert len(result) == 1
    assert result[0].btc_pub_height == 8988
    assert result[0].l2_keystone.hash == abrev(646465)
    assert db.calls[0][1] == ([abrev(646465)],)


def test_by_abrev_hash_not_published():
    db = FakeDb([finality_row(646464, 0, pub_hash=None)])
    result = l2_btc_finality_by_l2_keystone_abrev_hash(db, [abrev(646464)])
    assert len(result) == 1
    assert result[0].btc_pub_height == -1
    assert result[0].l2_keystone.l2_block_number == 646464


def test_by_abrev_hash_too_many():
    db = FakeDb()
    with pytest.raises(ValueError, match="cannot be longer than 100"):
        l2_btc_finality_by_l2_keystone_abrev_hash(db, [abrev(n) for n in range(101)])
    assert db.calls == []