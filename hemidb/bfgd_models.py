"""Row models of the bridge database and decoders for its notifications."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from hemidb.types import bytes_from_json, timestamp_from_json

NOTIFICATION_BTC_BLOCKS = "btc_blocks"
NOTIFICATION_ACCESS_PUBLIC_KEY_DELETE = "access_public_keys"
NOTIFICATION_L2_KEYSTONES = "l2_keystones"

IDENTIFIER_BTC_NEW_BLOCK = "btc-new-block"
IDENTIFIER_BTC_FINALITY = "btc-finality"


def _load(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data).decode("utf-8")
    if isinstance(data, str):
        return json.loads(data)
    return data


def _fields(obj: Any) -> Dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {type(obj).__name__}")
    return {str(key).lower(): value for key, value in obj.items()}


def _bytes_field(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"byte array must be a string, got {type(value).__name__}")
    return bytes_from_json(json.dumps(value))


def _timestamp_field(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    return timestamp_from_json(json.dumps(value))


def _uint_field(value: Any, bits: int) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected an unsigned integer, got {value!r}")
    if not 0 <= value < (1 << bits):
        raise ValueError(f"value {value} out of range for uint{bits}")
    return value


def _base64_field(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"base64 data must be a string, got {type(value).__name__}")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 data: {exc}") from exc


def _str_field(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {type(value).__name__}")
    return value


@dataclass
class L2Keystone:
    """An L2 keystone, looked up by its abbreviated hash."""

    hash: Optional[bytes] = None
    version: int = 0
    l1_block_number: int = 0
    l2_block_number: int = 0
    parent_ep_hash: Optional[bytes] = None
    prev_keystone_ep_hash: Optional[bytes] = None
    state_root: Optional[bytes] = None
    ep_hash: Optional[bytes] = None
    created_at: Optional[datetime] = field(default=None, compare=False)
    updated_at: Optional[datetime] = field(default=None, compare=False)

    @classmethod
    def from_json(cls, data: Any) -> Optional["L2Keystone"]:
        """Decode a keystone from JSON text or a decoded object; null gives None."""
        obj = _load(data)
        if obj is None:
            return None
        f = _fields(obj)
        return cls(
            hash=_bytes_field(f.get("hash")),
            version=_uint_field(f.get("version"), 32),
            l1_block_number=_uint_field(f.get("l1blocknumber"), 32),
            l2_block_number=_uint_field(f.get("l2blocknumber"), 32),
            parent_ep_hash=_bytes_field(f.get("parentephash")),
            prev_keystone_ep_hash=_bytes_field(f.get("prevkeystoneephash")),
            state_root=_bytes_field(f.get("stateroot")),
            ep_hash=_bytes_field(f.get("ephash")),
            created_at=_timestamp_field(f.get("createdat")),
            updated_at=_timestamp_field(f.get("updatedat")),
        )


@dataclass
class BtcBlock:
    """A bitcoin block header stored with its hash and height."""

    hash: Optional[bytes] = None
    header: Optional[bytes] = None
    height: int = 0
    created_at: Optional[datetime] = field(default=None, compare=False)
    updated_at: Optional[datetime] = field(default=None, compare=False)

    @classmethod
    def from_json(cls, data: Any) -> Optional["BtcBlock"]:
        """Decode a block from JSON text or a decoded object; null gives None."""
        obj = _load(data)
        if obj is None:
            return None
        f = _fields(obj)
        return cls(
            hash=_bytes_field(f.get("hash")),
            header=_bytes_field(f.get("header")),
            height=_uint_field(f.get("height"), 64),
            created_at=_timestamp_field(f.get("createdat")),
            updated_at=_timestamp_field(f.get("updatedat")),
        )


@dataclass
class PopBasis:
    """A proof-of-proof transaction and where it was mined."""

    id: int = field(default=0, compare=False)
    btc_tx_id: Optional[bytes] = None
    btc_raw_tx: Optional[bytes] = None
    btc_header_hash: Optional[bytes] = None
    btc_tx_index: Optional[int] = None
    btc_merkle_path: Optional[List[str]] = None
    pop_tx_id: Optional[bytes] = None
    pop_miner_public_key: Optional[bytes] = None
    l2_keystone_abrev_hash: Optional[bytes] = None
    created_at: Optional[datetime] = field(default=None, compare=False)
    updated_at: Optional[datetime] = field(default=None, compare=False)


@dataclass
class L2BTCFinality:
    """The bitcoin finality of an L2 keystone."""

    l2_keystone: L2Keystone = field(default_factory=L2Keystone)
    btc_pub_height: int = 0
    btc_pub_header_hash: Optional[bytes] = None
    effective_height: int = 0
    btc_tip_height: int = 0


@dataclass
class AccessPublicKey:
    """A public key that is allowed access."""

    public_key: Optional[bytes] = None
    created_at: Optional[datetime] = field(default=None, compare=False)
    # Notifications carry the key as an encoded string under "public_key".
    public_key_encoded: str = field(default="", compare=False)

    @classmethod
    def from_json(cls, data: Any) -> Optional["AccessPublicKey"]:
        """Decode a key from JSON text or a decoded object; null gives None."""
        obj = _load(data)
        if obj is None:
            return None
        f = _fields(obj)
        return cls(
            public_key=_base64_field(f.get("publickey")),
            created_at=_timestamp_field(f.get("createdat")),
            public_key_encoded=_str_field(f.get("public_key")),
        )


@dataclass(frozen=True)
class Notification:
    """An identified notification sent to clients."""

    id: str


BTC_NEW_BLOCK_NOTIFICATION = Notification(id=IDENTIFIER_BTC_NEW_BLOCK)
BTC_FINALITY_NOTIFICATION = Notification(id=IDENTIFIER_BTC_FINALITY)


def _l2_keystones_from_json(data: Any) -> Optional[List[L2Keystone]]:
    obj = _load(data)
    if obj is None:
        return None
    if not isinstance(obj, list):
        raise ValueError(f"expected a JSON array, got {type(obj).__name__}")
    return [L2Keystone() if item is None else L2Keystone.from_json(item) for item in obj]


_PAYLOADS: Dict[str, Callable[[Any], Any]] = {
    NOTIFICATION_BTC_BLOCKS: BtcBlock.from_json,
    NOTIFICATION_ACCESS_PUBLIC_KEY_DELETE: AccessPublicKey.from_json,
    NOTIFICATION_L2_KEYSTONES: _l2_keystones_from_json,
}


def notification_payload(name: str) -> Optional[Callable[[Any], Any]]:
    """Return the payload decoder for a notification name, or None if unknown."""
    return _PAYLOADS.get(name)


def decode_notification_payload(name: str, data: Any) -> Any:
    """Decode a notification payload; raises KeyError for an unknown name."""
    decoder = _PAYLOADS.get(name)
    if decoder is None:
        raise KeyError(f"unknown notification: {name}")
    return decoder(data)