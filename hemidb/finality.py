"""Bitcoin finality of L2 keystones, read from the canonical block view."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Protocol, Sequence

from hemidb.bfgd_models import L2BTCFinality, L2Keystone
from hemidb.types import scan_bytes

log = logging.getLogger(__name__)

FINALITY_LIMIT = 100

# The lowest canonical block height holding a publication of this keystone or
# of any later one.
_EFFECTIVE_HEIGHT_SQL = """
    COALESCE((SELECT MIN(height)
    FROM
    (
        SELECT height FROM btc_blocks_can
            INNER JOIN pop_basis ON pop_basis.btc_block_hash
                = btc_blocks_can.hash
            INNER JOIN l2_keystones ll ON ll.l2_keystone_abrev_hash
                = pop_basis.l2_keystone_abrev_hash
        WHERE ll.l2_block_number >= l2_keystones.l2_block_number
    ) AS published), 0)
"""

_KEYSTONE_FIELDS = """
    l2_keystones.l2_keystone_abrev_hash,
    l2_keystones.l1_block_number,
    l2_keystones.l2_block_number,
    l2_keystones.parent_ep_hash,
    l2_keystones.prev_keystone_ep_hash,
    l2_keystones.state_root,
    l2_keystones.ep_hash,
    l2_keystones.version
"""

_TIP_HEIGHT_SQL = "COALESCE((SELECT MAX(height) FROM btc_blocks_can), 0)"

_CANONICAL_TIP_SQL = """
    SELECT l2_keystones.l2_block_number
    FROM btc_blocks_can
    INNER JOIN pop_basis ON pop_basis.btc_block_hash = btc_blocks_can.hash
    INNER JOIN l2_keystones ON l2_keystones.l2_keystone_abrev_hash
        = pop_basis.l2_keystone_abrev_hash
    ORDER BY l2_block_number DESC LIMIT 1
"""

_PUBLISHED_SQL = f"""
    SELECT
        btc_blocks_can.hash,
        btc_blocks_can.height,
        {_KEYSTONE_FIELDS},
        {_EFFECTIVE_HEIGHT_SQL},
        {_TIP_HEIGHT_SQL}
    FROM btc_blocks_can
    INNER JOIN pop_basis ON pop_basis.btc_block_hash = btc_blocks_can.hash
    INNER JOIN l2_keystones ON l2_keystones.l2_keystone_abrev_hash
        = pop_basis.l2_keystone_abrev_hash
    WHERE l2_keystones.l2_block_number <= %s
    ORDER BY height DESC, l2_keystones.l2_block_number DESC LIMIT %s
"""

_ASSUMED_UNPUBLISHED_SQL = f"""
    SELECT
        NULL,
        0,
        {_KEYSTONE_FIELDS},
        {_EFFECTIVE_HEIGHT_SQL},
        {_TIP_HEIGHT_SQL}
    FROM l2_keystones
    WHERE l2_block_number <= %s
    AND l2_block_number != ANY(%s)
    ORDER BY l2_block_number DESC LIMIT %s
"""

_BY_ABREV_HASH_SQL = f"""
    SELECT
        btc_blocks_can.hash,
        COALESCE(btc_blocks_can.height, 0),
        {_KEYSTONE_FIELDS},
        {_EFFECTIVE_HEIGHT_SQL},
        {_TIP_HEIGHT_SQL}
    FROM l2_keystones
    LEFT JOIN pop_basis ON l2_keystones.l2_keystone_abrev_hash
        = pop_basis.l2_keystone_abrev_hash
    LEFT JOIN btc_blocks_can ON pop_basis.btc_block_hash
        = btc_blocks_can.hash
    WHERE l2_keystones.l2_keystone_abrev_hash = ANY(%s)
    ORDER BY l2_keystones.l2_block_number DESC
"""


class _Queryable(Protocol):
    def query(self, sql: str, params: Iterable[Any] = ...) -> List[Any]:
        ...


def _finality_from_row(row: Sequence[Any]) -> L2BTCFinality:
    (
        pub_hash, pub_height, abrev_hash, l1, l2, parent, prev,
        state_root, ep_hash, version, effective, tip_height,
    ) = row
    return L2BTCFinality(
        l2_keystone=L2Keystone(
            hash=scan_bytes(abrev_hash),
            version=int(version),
            l1_block_number=int(l1),
            l2_block_number=int(l2),
            parent_ep_hash=scan_bytes(parent),
            prev_keystone_ep_hash=scan_bytes(prev),
            state_root=scan_bytes(state_root),
            ep_hash=scan_bytes(ep_hash),
        ),
        btc_pub_height=int(pub_height),
        btc_pub_header_hash=scan_bytes(pub_hash),
        effective_height=int(effective),
        btc_tip_height=int(tip_height),
    )


def canonical_chain_tip_l2_block_number(db: _Queryable) -> Optional[int]:
    """Return the highest L2 block number published on the canonical chain, or None."""
    rows = db.query(_CANONICAL_TIP_SQL)
    if not rows:
        return None
    return int(rows[0][0])


def next_published_finalities(
    db: _Queryable, max_l2_block_number: int, limit: int
) -> List[L2BTCFinality]:
    """Return canonical publications of keystones at or below a block number."""
    rows = db.query(_PUBLISHED_SQL, (max_l2_block_number, int(limit)))
    return [_finality_from_row(row) for row in rows]


def next_assumed_unpublished_finalities(
    db: _Queryable,
    max_l2_block_number: int,
    limit: int,
    exclude_l2_block_numbers: Iterable[int],
) -> List[L2BTCFinality]:
    """Return keystones at or below a block number, assumed not yet published."""
    rows = db.query(
        _ASSUMED_UNPUBLISHED_SQL,
        (max_l2_block_number, list(exclude_l2_block_numbers), int(limit)),
    )
    finalities = [_finality_from_row(row) for row in rows]
    for finality in finalities:
        finality.btc_pub_height = -1
    return finalities


def merge_finalities(
    published: Sequence[L2BTCFinality],
    unpublished: Sequence[L2BTCFinality],
    tip: int,
    limit: int,
) -> List[L2BTCFinality]:
    """Interleave published and unpublished finalities walking down from ``tip``.

    A published finality wins over an unpublished one at the same or a lower
    L2 block number.
    """
    merged: List[L2BTCFinality] = []
    remaining = iter(published)
    next_published = next(remaining, None)
    while True:
        next_unpublished = next(
            (u for u in unpublished if u.l2_keystone.l2_block_number <= tip), None
        )
        if next_published is not None and (
            next_unpublished is None
            or next_published.l2_keystone.l2_block_number
            >= next_unpublished.l2_keystone.l2_block_number
        ):
            chosen = next_published
            next_published = next(remaining, None)
        elif next_unpublished is not None:
            chosen = next_unpublished
        else:
            break

        merged.append(chosen)
        if len(merged) >= limit:
            break
        if chosen.l2_keystone.l2_block_number == 0:
            break
        tip = chosen.l2_keystone.l2_block_number - 1
    return merged


def l2_btc_finality_most_recent(db: _Queryable, limit: int) -> List[L2BTCFinality]:
    """Return up to ``limit`` (at most 100) finalities, highest L2 block first."""
    if limit > FINALITY_LIMIT:
        raise ValueError(
            f"limit cannot be greater than {FINALITY_LIMIT}, received {limit}"
        )
    tip = canonical_chain_tip_l2_block_number(db)
    if tip is None:
        return []

    published = next_published_finalities(db, tip, limit)
    # A keystone may get published between the two queries; treating it as
    # unpublished leaves the answer slightly stale rather than wrong.
    exclude = [f.l2_keystone.l2_block_number for f in published]
    unpublished = next_assumed_unpublished_finalities(db, tip, limit, exclude)
    return merge_finalities(published, unpublished, tip, limit)


def l2_btc_finality_by_l2_keystone_abrev_hash(
    db: _Queryable, abrev_hashes: Sequence[bytes]
) -> List[L2BTCFinality]:
    """Return finalities of the given keystones, highest L2 block first."""
    if len(abrev_hashes) > FINALITY_LIMIT:
        raise ValueError(
            f"l2KeystoneAbrevHashes cannot be longer than {FINALITY_LIMIT}"
        )
    hashes = [bytes(h) for h in abrev_hashes]
    log.info("the hashes are %s", [h.hex() for h in hashes])
    finalities = [
        _finality_from_row(row) for row in db.query(_BY_ABREV_HASH_SQL, (hashes,))
    ]
    for finality in finalities:
        if finality.btc_pub_header_hash is None:
            finality.btc_pub_height = -1
    return finalities