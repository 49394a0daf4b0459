"""Conversion between Python values and Firestore's typed JSON encoding."""
from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

__all__ = ["encode_value", "decode_value", "encode_fields", "decode_document", "parse_timestamp"]


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as returned by Firestore.

    Firestore emits up to nanosecond precision, which ``fromisoformat`` does not
    accept, so the fraction is cut to microseconds first.
    """

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        index = 0
        while index < len(rest) and rest[index].isdigit():
            digits += rest[index]
            index += 1
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[index:]}"
    return datetime.fromisoformat(text)


def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": _format_timestamp(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"bytesValue": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple, set, frozenset)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"Unsupported value type for Firestore: {type(value).__name__}")


def encode_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(key): encode_value(item) for key, item in data.items()}


def decode_value(value: Mapping[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "bytesValue" in value:
        return base64.b64decode(value["bytesValue"])
    if "referenceValue" in value:
        return value["referenceValue"]
    if "geoPointValue" in value:
        return dict(value["geoPointValue"])
    if "mapValue" in value:
        fields = value["mapValue"].get("fields", {})
        return {key: decode_value(item) for key, item in fields.items()}
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    raise ValueError(f"Unrecognised Firestore value: {value!r}")


def decode_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a Firestore document into ``{"id": ..., **fields}``."""

    name = document.get("name", "")
    record: Dict[str, Any] = {"id": name.rsplit("/", 1)[-1]}
    for key, item in document.get("fields", {}).items():
        record[key] = decode_value(item)
    return record
