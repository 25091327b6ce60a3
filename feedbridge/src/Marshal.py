"""Marshal: capdata encoding for values published to and read from the ledger.

Ledger storage holds "capdata" records ``{"body": str, "slots": [str]}``.
Two body encodings are understood:

- smallcaps: the body is ``"#"`` followed by JSON. Strings carry a type
  prefix: ``+5``/``-5`` bigints, ``$0.Alleged: IST brand`` slot references,
  ``!`` escaped strings, ``#undefined``/``#NaN``/``#Infinity`` specials.
- legacy: plain JSON where special values are ``{"@qclass": ...}`` records.

.. code-block:: python

    >>> deserialize({"body": '#{"roundId":"+12"}', "slots": []})
    {'roundId': 12}
    >>> serialize({"unitPrice": BigInt(987654)})["body"]
    '#{"unitPrice":"+987654"}'
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Callable

SMALLCAPS_PREFIX = "#"
# Leading characters that mark a smallcaps string as non-plain.
SPECIAL_CHARS = "!\"#$%&'()*+,-"


class MarshalError(ValueError):
    """Raised when capdata cannot be encoded or decoded."""

    pass


class BigInt(int):
    """Marks an integer that must be encoded as a ledger bigint."""

    pass


@dataclass(frozen=True)
class BoardRemote:
    """Reference to a ledger object published on the board.

    :ivar board_id: Board identifier from the slot table (may be None).
    :ivar iface: Interface name, e.g. "Alleged: IST brand".
    """

    board_id: str | None
    iface: str = ""


SlotToVal = Callable[[str | None, str], Any]


def default_slot_to_val(board_id: str | None, iface: str) -> BoardRemote:
    return BoardRemote(board_id, iface)


def _decode_smallcaps(value: Any, slots: list, slot_to_val: SlotToVal) -> Any:
    if isinstance(value, str):
        if not value or value[0] not in SPECIAL_CHARS:
            return value
        prefix, rest = value[0], value[1:]
        if prefix == "!":
            return rest
        if prefix in "+-":
            try:
                return int(value)
            except ValueError as e:
                raise MarshalError(f"Invalid bigint {value!r}") from e
        if prefix in "$&":
            index_str, _, iface = rest.partition(".")
            try:
                index = int(index_str)
                return slot_to_val(slots[index], iface)
            except (ValueError, IndexError) as e:
                raise MarshalError(f"Invalid slot reference {value!r}") from e
        if prefix == "#":
            specials = {
                "undefined": None,
                "NaN": math.nan,
                "Infinity": math.inf,
                "-Infinity": -math.inf,
                "-0": -0.0,
            }
            if rest not in specials:
                raise MarshalError(f"Unknown special value {value!r}")
            return specials[rest]
        if prefix == "%":
            return rest
        raise MarshalError(f"Unsupported smallcaps string {value!r}")
    if isinstance(value, list):
        return [_decode_smallcaps(item, slots, slot_to_val) for item in value]
    if isinstance(value, dict):
        if "#error" in value:
            return {"error": value["#error"], "name": value.get("name", "Error")}
        return {
            key: _decode_smallcaps(item, slots, slot_to_val)
            for key, item in value.items()
        }
    return value


def _decode_legacy(value: Any, slots: list, slot_to_val: SlotToVal) -> Any:
    if isinstance(value, list):
        return [_decode_legacy(item, slots, slot_to_val) for item in value]
    if not isinstance(value, dict):
        return value

    qclass = value.get("@qclass")
    if qclass is None:
        return {
            key: _decode_legacy(item, slots, slot_to_val)
            for key, item in value.items()
        }
    if qclass == "bigint":
        return int(value["digits"])
    if qclass == "slot":
        try:
            return slot_to_val(slots[int(value["index"])], value.get("iface", ""))
        except (ValueError, IndexError, KeyError) as e:
            raise MarshalError(f"Invalid slot record {value!r}") from e
    if qclass == "undefined":
        return None
    if qclass == "NaN":
        return math.nan
    if qclass == "Infinity":
        return math.inf
    if qclass == "-Infinity":
        return -math.inf
    if qclass == "error":
        return {"error": value.get("message", ""), "name": value.get("name", "Error")}
    raise MarshalError(f"Unsupported @qclass {qclass!r}")


def deserialize(capdata: dict | str, slot_to_val: SlotToVal | None = None) -> Any:
    """Decode a capdata record into plain Python values.

    Bigints become ``int``, slot references go through ``slot_to_val``.

    :param capdata: Capdata dict or its JSON text.
    :param slot_to_val: Converter for slot references (default BoardRemote).
    :returns: Decoded value.
    :raises MarshalError: If the record is malformed.
    """
    if isinstance(capdata, str):
        try:
            capdata = json.loads(capdata)
        except json.JSONDecodeError as e:
            raise MarshalError(f"Capdata is not JSON: {e}") from e

    if not isinstance(capdata, dict) or not isinstance(capdata.get("body"), str):
        raise MarshalError(f"Not a capdata record: {capdata!r}")

    body = capdata["body"]
    slots = capdata.get("slots") or []
    slot_to_val = slot_to_val or default_slot_to_val

    try:
        if body.startswith(SMALLCAPS_PREFIX):
            return _decode_smallcaps(json.loads(body[1:]), slots, slot_to_val)
        return _decode_legacy(json.loads(body), slots, slot_to_val)
    except json.JSONDecodeError as e:
        raise MarshalError(f"Capdata body is not JSON: {e}") from e


def _encode(value: Any, slots: list[str]) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, BigInt):
        return f"+{int(value)}" if value >= 0 else str(int(value))
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value):
            return "#NaN"
        if math.isinf(value):
            return "#Infinity" if value > 0 else "#-Infinity"
        return value
    if isinstance(value, str):
        if value and value[0] in SPECIAL_CHARS:
            return "!" + value
        return value
    if isinstance(value, BoardRemote):
        if value.board_id not in slots:
            slots.append(value.board_id)
        return f"${slots.index(value.board_id)}.{value.iface}"
    if isinstance(value, (list, tuple)):
        return [_encode(item, slots) for item in value]
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise MarshalError(f"Record keys must be strings, got {key!r}")
            encoded[key] = _encode(item, slots)
        return encoded
    raise MarshalError(f"Cannot serialize {type(value).__name__}")


def serialize(value: Any) -> dict[str, Any]:
    """Encode a value as smallcaps capdata.

    :param value: Plain data; wrap ints in BigInt where a bigint is required.
    :returns: Capdata dict ``{"body": "#...", "slots": [...]}``.
    :raises MarshalError: On unsupported types.
    """
    slots: list[str] = []
    encoded = _encode(value, slots)
    body = SMALLCAPS_PREFIX + json.dumps(encoded, separators=(",", ":"))
    return {"body": body, "slots": slots}


def parse_stream_cell(text: str) -> tuple[int, list[dict]]:
    """Split a storage value into its block height and capdata records.

    Storage values wrap a stream cell: ``{"value": "{\\"blockHeight\\": ...,
    \\"values\\": [capdata-json, ...]}"}``.

    :param text: Raw storage value.
    :returns: Tuple of (block height, capdata list oldest first).
    :raises MarshalError: If the text is not a stream cell.
    """
    try:
        outer = json.loads(text)
        cell = json.loads(outer["value"])
        values = [json.loads(v) for v in cell["values"]]
        block_height = int(cell.get("blockHeight") or 0)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise MarshalError(f"Malformed stream cell: {e}") from e
    return block_height, values


def make_stream_cell(values: list[Any], block_height: int = 1) -> str:
    """Build storage text holding ``values`` as one stream cell.

    Used to publish fixtures for local chains and tests.
    """
    cell = {
        "blockHeight": str(block_height),
        "values": [json.dumps(serialize(v)) for v in values],
    }
    return json.dumps({"value": json.dumps(cell)})
