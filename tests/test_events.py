import json

import pytest

from safupad_indexer.errors import DecodeError
from safupad_indexer.events import EVENT_SCHEMAS, decode_event, decode_json_line

from .conftest import BUYER, DEX, MANAGER, TOKEN, FOUNDER, tx


def envelope(kind, params, **overrides):
    payload = {
        "kind": kind,
        "address": DEX,
        "txHash": tx(1),
        "logIndex": 2,
        "blockNumber": 100,
        "blockTimestamp": 1_700_000_000,
        "params": params,
    }
    payload.update(overrides)
    return payload


BUY_PARAMS = {
    "token": TOKEN.upper(),
    "buyer": BUYER,
    "bnbAmount": "10",
    "tokensReceived": "90",
    "currentPrice": "0x9",
    "feeRate": 300,
}


def test_all_kinds_have_schemas():
    assert len(EVENT_SCHEMAS) == 16


def test_decode_coerces_params():
    event = decode_event(envelope("TokensBought", BUY_PARAMS))
    assert event.kind == "TokensBought"
    assert event.params["token"] == TOKEN
    assert event.params["bnbAmount"] == 10
    assert event.params["currentPrice"] == 9
    assert event.position == (100, 2)
    assert event.event_id == f"{tx(1)}-2"


def test_payload_keeps_big_amounts_exact():
    params = dict(BUY_PARAMS, bnbAmount=str(2 ** 200))
    event = decode_event(envelope("TokensBought", params))
    again = decode_json_line(event.to_json())
    assert again.params["bnbAmount"] == 2 ** 200
    assert again == event


def test_optional_params_default():
    event = decode_event(
        envelope(
            "LaunchCreated",
            {"token": TOKEN, "founder": FOUNDER, "totalSupply": 1, "launchType": 1},
            address=MANAGER,
        )
    )
    assert event.params["raiseTargetBNB"] == 0
    assert event.params["burnLP"] is False


@pytest.mark.parametrize(
    "payload",
    [
        envelope("Mystery", {}),
        envelope("TokensBought", {k: v for k, v in BUY_PARAMS.items() if k != "feeRate"}),
        envelope("TokensBought", dict(BUY_PARAMS, bnbAmount="-1")),
        envelope("TokensBought", dict(BUY_PARAMS, buyer="not-an-address")),
        envelope("TokensBought", BUY_PARAMS, txHash="0x12"),
        envelope("TokensBought", [1, 2]),
        [1, 2, 3],
    ],
)
def test_decode_rejects(payload):
    with pytest.raises(DecodeError):
        decode_event(payload)


def test_missing_envelope_field():
    payload = envelope("TokensBought", BUY_PARAMS)
    del payload["blockNumber"]
    with pytest.raises(DecodeError) as ei:
        decode_event(payload)
    assert ei.value.payload is payload


def test_invalid_json_line_keeps_raw_text():
    with pytest.raises(DecodeError) as ei:
        decode_json_line("{not json")
    assert ei.value.payload == {"raw": "{not json"}


def test_to_payload_is_json_ready():
    event = decode_event(envelope("TokensBought", BUY_PARAMS))
    data = json.loads(event.to_json())
    assert data["params"]["bnbAmount"] == "10"
    assert data["txHash"] == tx(1)
