import base64
import json
from datetime import datetime, timezone

import pytest

from hemidb.bfgd_models import (
    AccessPublicKey,
    BtcBlock,
    L2Keystone,
    PopBasis,
    decode_notification_payload,
    notification_payload,
)


def fill_out_bytes(prefix, size):
    return prefix.encode().ljust(size, b"_")


def escaped(data):
    return "\\x" + data.hex()


BLOCK_HASH = fill_out_bytes("MyHaSh", 32)
BLOCK_HEADER = fill_out_bytes("myHeAdEr", 80)


def block_json(**extra):
    obj = {"hash": escaped(BLOCK_HASH), "header": escaped(BLOCK_HEADER), "height": 1}
    obj.update(extra)
    return json.dumps(obj)


def test_btc_block_from_json():
    block = BtcBlock.from_json(block_json())
    assert block == BtcBlock(hash=BLOCK_HASH, header=BLOCK_HEADER, height=1)


def test_btc_block_from_json_bytes_matches_text():
    text = block_json()
    assert BtcBlock.from_json(text.encode()) == BtcBlock.from_json(text)


def test_btc_block_keys_are_case_insensitive():
    text = json.dumps({"HASH": escaped(BLOCK_HASH), "Height": 7})
    block = BtcBlock.from_json(text)
    assert block.hash == BLOCK_HASH
    assert block.height == 7
    assert block.header is None


def test_btc_block_timestamp_fields():
    block = BtcBlock.from_json(block_json(CreatedAt="2022-05-11T15:23:31.723583"))
    assert block.created_at == datetime(2022, 5, 11, 15, 23, 31, 723583, tzinfo=timezone.utc)
    snake = BtcBlock.from_json(block_json(created_at="2022-05-11T15:23:31.723583"))
    assert snake.created_at is None


def test_btc_block_null_is_none():
    assert BtcBlock.from_json("null") is None


@pytest.mark.parametrize(
    "text",
    [
        json.dumps({"height": -1}),
        json.dumps({"height": 1.5}),
        json.dumps({"hash": BLOCK_HASH.hex()}),
        json.dumps([1, 2]),
    ],
)
def test_btc_block_invalid(text):
    with pytest.raises(ValueError):
        BtcBlock.from_json(text)


def test_equality_ignores_generated_fields():
    stamp = datetime(2022, 5, 11, tzinfo=timezone.utc)
    assert BtcBlock(hash=BLOCK_HASH, created_at=stamp) == BtcBlock(hash=BLOCK_HASH)
    assert PopBasis(id=5, btc_tx_id=BLOCK_HASH) == PopBasis(btc_tx_id=BLOCK_HASH)
    assert PopBasis(btc_tx_index=2) != PopBasis(btc_tx_index=3)


def keystone_obj(hash_prefix, l2_block_number):
    return {
        "Hash": escaped(fill_out_bytes(hash_prefix, 32)),
        "Version": 1,
        "L1BlockNumber": 11,
        "L2BlockNumber": l2_block_number,
        "ParentEPHash": escaped(fill_out_bytes("parentephash", 32)),
        "PrevKeystoneEPHash": escaped(fill_out_bytes("prevkeystoneephash", 32)),
        "StateRoot": escaped(fill_out_bytes("stateroot", 32)),
        "EPHash": escaped(fill_out_bytes("ephash", 32)),
    }


def expected_keystone(hash_prefix, l2_block_number):
    return L2Keystone(
        hash=fill_out_bytes(hash_prefix, 32),
        version=1,
        l1_block_number=11,
        l2_block_number=l2_block_number,
        parent_ep_hash=fill_out_bytes("parentephash", 32),
        prev_keystone_ep_hash=fill_out_bytes("prevkeystoneephash", 32),
        state_root=fill_out_bytes("stateroot", 32),
        ep_hash=fill_out_bytes("ephash", 32),
    )


def test_l2_keystone_from_json():
    got = L2Keystone.from_json(json.dumps(keystone_obj("mockhash", 22)))
    assert got == expected_keystone("mockhash", 22)


def test_l2_keystone_rejects_out_of_range_number():
    obj = keystone_obj("mockhash", 2**32)
    with pytest.raises(ValueError):
        L2Keystone.from_json(obj)


def test_l2_keystones_notification_decodes_list():
    text = json.dumps([keystone_obj("mockhash", 22), keystone_obj("mockhashz", 23), None])
    got = decode_notification_payload("l2_keystones", text)
    assert got == [
        expected_keystone("mockhash", 22),
        expected_keystone("mockhashz", 23),
        L2Keystone(),
    ]


def test_l2_keystones_notification_requires_array():
    with pytest.raises(ValueError):
        decode_notification_payload("l2_keystones", json.dumps(keystone_obj("mockhash", 1)))


def test_access_public_key_from_json():
    key = b"popminerpublickey"
    text = json.dumps({"PublicKey": base64.b64encode(key).decode(), "public_key": escaped(key)})
    got = decode_notification_payload("access_public_keys", text)
    assert got.public_key == key
    assert got.public_key_encoded == escaped(key)


def test_access_public_key_invalid_base64():
    with pytest.raises(ValueError):
        AccessPublicKey.from_json(json.dumps({"PublicKey": "%%%"}))


def test_notification_payload_lookup():
    decoder = notification_payload("btc_blocks")
    assert decoder(block_json()) == BtcBlock.from_json(block_json())
    assert notification_payload("no_such_table") is None


def test_decode_unknown_notification():
    with pytest.raises(KeyError):
        decode_notification_payload("no_such_table", "{}")