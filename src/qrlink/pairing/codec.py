"""Canonical codec for credential trees containing binary values.

Binary leaves are wrapped as ``{"type": "Buffer", "data": "<base64>"}`` so a
JSON document round-trips them byte-for-byte. Any conformant reader can
decode the artifact by reversing the wrapper.
"""

import base64
import binascii
import json
from typing import Any, Mapping

BUFFER_TAG = "Buffer"
ARTIFACT_VERSION = 1


def _is_buffer_wrapper(value: Mapping[str, Any]) -> bool:
    return (
        len(value) == 2
        and value.get("type") == BUFFER_TAG
        and isinstance(value.get("data"), str)
    )


def encode_value(value: Any) -> Any:
    """Recursively replace binary leaves with tagged base64 wrappers.

    Raises:
        TypeError: For values JSON cannot carry or non-string mapping keys.
        ValueError: For a mapping that already has the wrapper's shape.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {
            "type": BUFFER_TAG,
            "data": base64.b64encode(bytes(value)).decode("ascii"),
        }
    if isinstance(value, Mapping):
        if _is_buffer_wrapper(value):
            raise ValueError("Mapping collides with the binary wrapper shape")
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Mapping keys must be strings, got {type(key).__name__}")
            encoded[key] = encode_value(item)
        return encoded
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"Cannot encode value of type {type(value).__name__}")


def decode_value(value: Any) -> Any:
    """Reverse ``encode_value``.

    Raises:
        ValueError: If a wrapper carries invalid base64.
    """
    if isinstance(value, dict):
        if _is_buffer_wrapper(value):
            try:
                return base64.b64decode(value["data"], validate=True)
            except binascii.Error as e:
                raise ValueError(f"Invalid base64 in binary wrapper: {e}") from e
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def serialize_fields(fields: Mapping[str, Any]) -> bytes:
    """Serialize credential fields to the transmittable JSON artifact."""
    document = {"version": ARTIFACT_VERSION, "fields": encode_value(fields)}
    return json.dumps(document, indent=2, sort_keys=True).encode("utf-8")


def deserialize_fields(artifact: bytes) -> dict[str, Any]:
    """Parse an artifact produced by ``serialize_fields``.

    Raises:
        ValueError: If the artifact is not valid JSON or has an unknown version.
    """
    try:
        document = json.loads(artifact.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Artifact is not valid JSON: {e}") from e

    if not isinstance(document, dict) or document.get("version") != ARTIFACT_VERSION:
        raise ValueError("Unsupported artifact version")

    fields = document.get("fields")
    if not isinstance(fields, dict):
        raise ValueError("Artifact has no fields object")
    return decode_value(fields)
