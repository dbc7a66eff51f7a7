"""Storage of keystones, bitcoin blocks, proof-of-proof data and access keys."""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from hemidb.bfgd_models import AccessPublicKey, BtcBlock, L2Keystone, PopBasis
from hemidb.postgres import ConnectFn, Database, constraint_violation
from hemidb.types import (
    DatabaseError,
    DuplicateError,
    NotFoundError,
    ValidationError,
    bytes_value,
    scan_bytes,
    scan_timestamp,
)

log = logging.getLogger(__name__)

BFGD_VERSION = 6
MOST_RECENT_LIMIT = 100

_KEYSTONE_LENGTH_CONSTRAINTS = frozenset(
    {
        "l2_keystone_abrev_hash_length",
        "state_root_length",
        "parent_ep_hash_length",
        "prev_keystone_ep_hash_length",
        "ep_hash_length",
    }
)

_KEYSTONE_COLUMNS = """
    l2_keystone_abrev_hash,
    l1_block_number,
    l2_block_number,
    parent_ep_hash,
    prev_keystone_ep_hash,
    state_root,
    ep_hash,
    version,
    created_at,
    updated_at
"""

_INSERT_L2_KEYSTONE = """
    INSERT INTO l2_keystones (
        l2_keystone_abrev_hash,
        l1_block_number,
        l2_block_number,
        parent_ep_hash,
        prev_keystone_ep_hash,
        state_root,
        ep_hash,
        version
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
"""

_SELECT_POP_BASIS = """
    SELECT
        id,
        btc_txid,
        btc_raw_tx,
        btc_block_hash,
        btc_tx_index,
        btc_merkle_path,
        pop_txid,
        l2_keystone_abrev_hash,
        pop_miner_public_key,
        created_at,
        updated_at
    FROM pop_basis
    WHERE l2_keystone_abrev_hash = %s
"""

_UPDATE_POP_BASIS_BTC_FIELDS = """
    UPDATE pop_basis SET
        btc_block_hash = %s,
        btc_merkle_path = %s,
        pop_txid = %s,
        btc_tx_index = %s,
        updated_at = NOW()
    WHERE
        btc_txid = %s
        -- only fill in rows not yet tied to a block, so a fork is not overwritten
        AND btc_block_hash IS NULL
        AND btc_merkle_path IS NULL
        AND pop_txid IS NULL
        AND btc_tx_index IS NULL
"""

_INSERT_POP_BASIS_FULL = """
    INSERT INTO pop_basis (
        btc_txid,
        btc_raw_tx,
        btc_block_hash,
        btc_tx_index,
        btc_merkle_path,
        pop_txid,
        l2_keystone_abrev_hash,
        pop_miner_public_key
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (btc_txid, btc_raw_tx, btc_block_hash, btc_tx_index)
    DO NOTHING
"""

_DELETE_ACCESS_PUBLIC_KEY = """
    WITH deleted AS (
        DELETE FROM access_public_keys WHERE public_key = %s
        RETURNING *
    ) SELECT count(*) FROM deleted;
"""


def _hash32(value: bytes) -> bytes:
    data = bytes(value)
    if len(data) != 32:
        raise ValueError(f"hash must be 32 bytes, got {len(data)}")
    return data


def _merkle_path_json(path: Optional[Sequence[str]]) -> str:
    return json.dumps(None if path is None else list(path), separators=(",", ":"))


def _merkle_path_from_column(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise DatabaseError(f"invalid merkle path: {exc}") from exc
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise DatabaseError(f"invalid merkle path: {value!r}")
    return list(value)


def _keystone_from_row(row: Sequence[Any]) -> L2Keystone:
    (abrev_hash, l1, l2, parent, prev, state_root, ep_hash, version, created, updated) = row
    return L2Keystone(
        hash=scan_bytes(abrev_hash),
        version=int(version),
        l1_block_number=int(l1),
        l2_block_number=int(l2),
        parent_ep_hash=scan_bytes(parent),
        prev_keystone_ep_hash=scan_bytes(prev),
        state_root=scan_bytes(state_root),
        ep_hash=scan_bytes(ep_hash),
        created_at=scan_timestamp(created),
        updated_at=scan_timestamp(updated),
    )


def _pop_basis_from_row(row: Sequence[Any]) -> PopBasis:
    (
        row_id, btc_txid, raw_tx, block_hash, tx_index, merkle,
        pop_txid, abrev_hash, public_key, created, updated,
    ) = row
    return PopBasis(
        id=int(row_id),
        btc_tx_id=scan_bytes(btc_txid),
        btc_raw_tx=scan_bytes(raw_tx),
        btc_header_hash=scan_bytes(block_hash),
        btc_tx_index=None if tx_index is None else int(tx_index),
        btc_merkle_path=_merkle_path_from_column(merkle),
        pop_tx_id=scan_bytes(pop_txid),
        pop_miner_public_key=scan_bytes(public_key),
        l2_keystone_abrev_hash=scan_bytes(abrev_hash),
        created_at=scan_timestamp(created),
        updated_at=scan_timestamp(updated),
    )


def _pop_block_error(exc: Exception, length_errors: dict) -> DatabaseError:
    constraint = constraint_violation(exc)
    if constraint is None:
        return DatabaseError(f"failed to insert pop block: {exc}")
    message = length_errors.get(constraint)
    if message is not None:
        return ValidationError(message)
    return DuplicateError(f"duplicate pop block entry: {exc}")


class BfgdDatabase(Database):
    """The bridge database: keystones, bitcoin blocks, pop data and access keys."""

    def __init__(
        self,
        connection: Any,
        uri: str,
        listener_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        super().__init__(connection, uri, listener_factory)
        self._statement_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        connect_fn: ConnectFn,
        uri: str,
        listener_factory: Optional[Callable[[str], Any]] = None,
    ) -> "BfgdDatabase":
        """Connect, check the schema version and refresh the canonical block view."""
        db = super().open(connect_fn, uri, BFGD_VERSION, listener_factory)
        log.debug("bfgd database version: %s", BFGD_VERSION)
        try:
            db.refresh_btc_blocks_canonical()
        except BaseException:
            db.close()
            raise
        return db

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._statement_lock:
            cursor = self.connection.cursor()
            try:
                yield cursor
            except BaseException:
                try:
                    self.connection.rollback()
                except Exception:
                    log.error("could not roll back transaction", exc_info=True)
                raise
            else:
                self.connection.commit()
            finally:
                cursor.close()

    def _run(self, sql: str, params: Iterable[Any] = ()) -> Tuple[List[Any], int]:
        with self._transaction() as cursor:
            cursor.execute(sql, tuple(params))
            rowcount = cursor.rowcount
            rows = list(cursor.fetchall()) if cursor.description is not None else []
        return rows, rowcount

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[Any]:
        """Run one statement in its own transaction and return all its rows."""
        rows, _ = self._run(sql, params)
        return rows

    def _single_value(self, sql: str, params: Iterable[Any] = ()) -> Any:
        rows = self.query(sql, params)
        if not rows:
            raise DatabaseError("should not get here")
        return rows[0][0]

    def version(self) -> int:
        """Return the schema version stored in the database."""
        return int(self._single_value("SELECT * FROM version LIMIT 1;"))

    def l2_keystones_count(self) -> int:
        """Return the number of stored L2 keystones."""
        return int(self._single_value("SELECT COUNT(*) FROM l2_keystones;"))

    def l2_keystones_insert(self, keystones: Sequence[L2Keystone]) -> None:
        """Insert keystones atomically: all of them or none."""
        if not keystones:
            log.error("empty l2 keystones, nothing to do")
            return
        try:
            with self._transaction() as cursor:
                for keystone in keystones:
                    cursor.execute(
                        _INSERT_L2_KEYSTONE,
                        (
                            bytes_value(keystone.hash),
                            keystone.l1_block_number,
                            keystone.l2_block_number,
                            bytes_value(keystone.parent_ep_hash),
                            bytes_value(keystone.prev_keystone_ep_hash),
                            bytes_value(keystone.state_root),
                            bytes_value(keystone.ep_hash),
                            keystone.version,
                        ),
                    )
                    if cursor.rowcount < 1:
                        raise DatabaseError(
                            f"failed to insert l2 keystone rows: {cursor.rowcount}"
                        )
        except DatabaseError:
            raise
        except Exception as exc:
            constraint = constraint_violation(exc)
            if constraint is None:
                raise DatabaseError(f"failed to insert l2 keystone: {exc}") from exc
            if constraint in _KEYSTONE_LENGTH_CONSTRAINTS:
                raise ValidationError(str(exc)) from exc
            log.error("integrity violation occurred: %s", constraint)
            raise DuplicateError(f"constraint error: {exc}") from exc

    def l2_keystone_by_abrev_hash(self, abrev_hash: bytes) -> L2Keystone:
        """Return the keystone with this 32-byte abbreviated hash."""
        rows = self.query(
            f"SELECT {_KEYSTONE_COLUMNS} FROM l2_keystones WHERE l2_keystone_abrev_hash = %s",
            (_hash32(abrev_hash),),
        )
        if not rows:
            raise NotFoundError("l2 keystone not found")
        return _keystone_from_row(rows[0])

    def l2_keystones_most_recent_n(self, n: int) -> List[L2Keystone]:
        """Return up to ``n`` (at most 100) keystones, highest L2 block first."""
        n = min(n, MOST_RECENT_LIMIT)
        rows = self.query(
            f"SELECT {_KEYSTONE_COLUMNS} FROM l2_keystones "
            "ORDER BY l2_block_number DESC LIMIT %s",
            (n,),
        )
        return [_keystone_from_row(row) for row in rows]

    def btc_block_insert(self, block: BtcBlock) -> None:
        """Insert a bitcoin block."""
        try:
            _, rowcount = self._run(
                "INSERT INTO btc_blocks (hash, header, height) VALUES (%s, %s, %s)",
                (bytes_value(block.hash), bytes_value(block.header), block.height),
            )
        except Exception as exc:
            if constraint_violation(exc) is not None:
                raise DuplicateError(f"duplicate btc block entry: {exc}") from exc
            raise DatabaseError(f"failed to insert btc block: {exc}") from exc
        if rowcount < 1:
            raise DatabaseError(f"failed to insert btc block rows: {rowcount}")

    def btc_block_by_hash(self, block_hash: bytes) -> BtcBlock:
        """Return the bitcoin block with this 32-byte hash."""
        rows = self.query(
            "SELECT hash, header, height, created_at, updated_at "
            "FROM btc_blocks WHERE hash = %s",
            (_hash32(block_hash),),
        )
        if not rows:
            raise NotFoundError("btc block not found")
        hash_, header, height, created, updated = rows[0]
        return BtcBlock(
            hash=scan_bytes(hash_),
            header=scan_bytes(header),
            height=int(height),
            created_at=scan_timestamp(created),
            updated_at=scan_timestamp(updated),
        )

    def btc_block_height_by_hash(self, block_hash: bytes) -> int:
        """Return the height of the bitcoin block with this 32-byte hash."""
        rows = self.query(
            "SELECT height FROM btc_blocks WHERE hash = %s", (_hash32(block_hash),)
        )
        if not rows:
            raise NotFoundError("btc block height not found")
        return int(rows[0][0])

    def pop_basis_insert_popm_fields(self, pop_basis: PopBasis) -> None:
        """Insert the fields of a pop basis that the pop miner knows."""
        try:
            _, rowcount = self._run(
                "INSERT INTO pop_basis (btc_txid, btc_raw_tx, l2_keystone_abrev_hash, "
                "pop_miner_public_key) VALUES (%s, %s, %s, %s)",
                (
                    bytes_value(pop_basis.btc_tx_id),
                    bytes_value(pop_basis.btc_raw_tx),
                    bytes_value(pop_basis.l2_keystone_abrev_hash),
                    bytes_value(pop_basis.pop_miner_public_key),
                ),
            )
        except Exception as exc:
            raise _pop_block_error(
                exc, {"btc_txid_length": "BtcTxId must be length 32"}
            ) from exc
        if rowcount < 1:
            raise DatabaseError(f"failed to insert pop block rows: {rowcount}")

    def pop_basis_update_btc_fields(self, pop_basis: PopBasis) -> int:
        """Fill in the bitcoin fields of unconfirmed rows; return rows updated."""
        try:
            _, rowcount = self._run(
                _UPDATE_POP_BASIS_BTC_FIELDS,
                (
                    bytes_value(pop_basis.btc_header_hash),
                    _merkle_path_json(pop_basis.btc_merkle_path),
                    bytes_value(pop_basis.pop_tx_id),
                    pop_basis.btc_tx_index,
                    bytes_value(pop_basis.btc_tx_id),
                ),
            )
        except Exception as exc:
            raise _pop_block_error(
                exc, {"pop_txid_length": "PopTxId must be length 32"}
            ) from exc
        return rowcount

    def pop_basis_insert_full(self, pop_basis: PopBasis) -> None:
        """Insert a complete pop basis."""
        try:
            _, rowcount = self._run(
                _INSERT_POP_BASIS_FULL,
                (
                    bytes_value(pop_basis.btc_tx_id),
                    bytes_value(pop_basis.btc_raw_tx),
                    bytes_value(pop_basis.btc_header_hash),
                    pop_basis.btc_tx_index,
                    _merkle_path_json(pop_basis.btc_merkle_path),
                    bytes_value(pop_basis.pop_tx_id),
                    bytes_value(pop_basis.l2_keystone_abrev_hash),
                    bytes_value(pop_basis.pop_miner_public_key),
                ),
            )
        except Exception as exc:
            raise _pop_block_error(
                exc,
                {
                    "btc_txid_length": "BtcTxId must be length 32",
                    "pop_txid_length": "PopTxId must be length 32",
                },
            ) from exc
        if rowcount < 1:
            raise DatabaseError(f"failed to insert pop block rows: {rowcount}")

    def pop_basis_by_l2_keystone_abrev_hash(
        self, abrev_hash: bytes, exclude_unconfirmed: bool
    ) -> List[PopBasis]:
        """Return the pop bases of a keystone, optionally only those in a block."""
        key = _hash32(abrev_hash)
        sql = _SELECT_POP_BASIS
        if exclude_unconfirmed:
            sql += " AND btc_block_hash IS NOT NULL"
        log.info("querying for hash: %s", key.hex())
        return [_pop_basis_from_row(row) for row in self.query(sql, (key,))]

    def btc_block_canonical_height(self) -> int:
        """Return the highest block height on the canonical chain, or 0."""
        return int(self._single_value("SELECT COALESCE(MAX(height),0) FROM btc_blocks_can"))

    def access_public_key_insert(self, public_key: AccessPublicKey) -> None:
        """Allow access for a public key."""
        try:
            self._run(
                "INSERT INTO access_public_keys (public_key) VALUES (%s)",
                (bytes_value(public_key.public_key),),
            )
        except Exception as exc:
            if constraint_violation(exc) == "access_public_keys_pkey":
                raise DuplicateError("public key already exists") from exc
            raise

    def access_public_key_exists(self, public_key: AccessPublicKey) -> bool:
        """Return whether access is allowed for a public key."""
        return bool(
            self._single_value(
                "SELECT EXISTS (SELECT * FROM access_public_keys WHERE public_key = %s)",
                (bytes_value(public_key.public_key),),
            )
        )

    def access_public_key_delete(self, public_key: AccessPublicKey) -> None:
        """Revoke access for a public key; raises NotFoundError if it is unknown."""
        rows = self.query(_DELETE_ACCESS_PUBLIC_KEY, (bytes_value(public_key.public_key),))
        if rows and int(rows[0][0]) == 0:
            raise NotFoundError("public key not found")

    def refresh_btc_blocks_canonical(self) -> None:
        """Recompute the materialized view of canonical bitcoin blocks."""
        self._run("REFRESH MATERIALIZED VIEW btc_blocks_can")