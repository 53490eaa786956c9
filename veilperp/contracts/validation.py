from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from . import streams


ENVELOPE_REQUIRED_KEYS = {
    "event_id",
    "trace_id",
    "produced_at",
    "schema",
    "schema_version",
    "payload",
}
ENVELOPE_OPTIONAL_KEYS = {"source_service"}

U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1


def _require_exact_keys(obj: dict[str, Any], *, required: set[str], optional: set[str] | None = None) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    missing = required - keys
    extra = keys - required - optional
    if missing:
        raise ValueError(f"missing keys: {sorted(missing)}")
    if extra:
        raise ValueError(f"extra keys not allowed in v1: {sorted(extra)}")


def _require_str(d: dict[str, Any], k: str) -> str:
    v = d.get(k)
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{k} must be non-empty string")
    return v


def _require_int(d: dict[str, Any], k: str) -> int:
    v = d.get(k)
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValueError(f"{k} must be int")
    return v


def _require_uint(d: dict[str, Any], k: str, *, maximum: int) -> int:
    v = _require_int(d, k)
    if not (0 <= v <= maximum):
        raise ValueError(f"{k} out of range")
    return v


def _require_hex(d: dict[str, Any], k: str, *, nbytes: int = 32) -> bytes:
    v = _require_str(d, k)
    try:
        raw = bytes.fromhex(v)
    except ValueError as e:
        raise ValueError(f"{k} must be hex") from e
    if len(raw) != nbytes:
        raise ValueError(f"{k} must be {nbytes} bytes")
    return raw


def _parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except Exception as e:  # pragma: no cover
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise ValueError("timestamp must include timezone")
    return dt


def validate_envelope_dict(event: dict[str, Any]) -> None:
    """Strict v1 validation of a finalization record envelope.

    - v1 does not allow extra fields (schema evolution uses v2 streams)
    - payload must match schema-specific rules
    """

    _require_exact_keys(event, required=ENVELOPE_REQUIRED_KEYS, optional=ENVELOPE_OPTIONAL_KEYS)
    _require_str(event, "event_id")
    _require_str(event, "trace_id")
    produced_at = _require_str(event, "produced_at")
    _parse_iso8601(produced_at)

    schema = _require_str(event, "schema")
    schema_version = _require_int(event, "schema_version")
    if schema_version != 1 or not schema.endswith(".v1"):
        raise ValueError("schema_version must be 1 and schema must end with .v1")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        raise ValueError("payload must be object")
    validate_payload(schema, payload)


def _validate_common(payload: dict[str, Any]) -> None:
    _require_uint(payload, "offset", maximum=U64_MAX)
    _require_uint(payload, "position_id", maximum=U64_MAX)


def validate_payload(schema: str, payload: dict[str, Any]) -> None:
    if schema == streams.MPC_POSITION_OPENED_V1:
        _require_exact_keys(
            payload,
            required={
                "offset",
                "position_id",
                "owner",
                "side",
                "entry_price",
                "size_encrypted",
                "size_nonce",
                "collateral_encrypted",
                "collateral_nonce",
            },
        )
        _validate_common(payload)
        _require_hex(payload, "owner")
        if _require_int(payload, "side") not in (0, 1):
            raise ValueError("side must be 0 (long) or 1 (short)")
        if _require_uint(payload, "entry_price", maximum=U64_MAX) == 0:
            raise ValueError("entry_price must be > 0")
        _require_hex(payload, "size_encrypted")
        _require_hex(payload, "collateral_encrypted")
        _require_uint(payload, "size_nonce", maximum=U128_MAX)
        _require_uint(payload, "collateral_nonce", maximum=U128_MAX)
        return

    if schema in streams.ENCRYPTED_FIELDS:
        fields = set(streams.ENCRYPTED_FIELDS[schema])
        required = {"offset", "position_id", "nonce"} | fields
        optional = {"owner", "liquidator"}
        _require_exact_keys(payload, required=required, optional=optional)
        _validate_common(payload)
        _require_uint(payload, "nonce", maximum=U128_MAX)
        for k in sorted(fields):
            _require_hex(payload, k)
        for k in optional:
            if k in payload:
                _require_hex(payload, k)
        return

    if schema == streams.MPC_COMPUTATION_FAILED_V1:
        _require_exact_keys(payload, required={"offset", "position_id", "reason"}, optional={"details"})
        _validate_common(payload)
        _require_str(payload, "reason")
        if "details" in payload and not isinstance(payload["details"], dict):
            raise ValueError("details must be object")
        return

    # For new schemas: add v2 stream, then update this mapping.
    raise ValueError(f"unknown schema: {schema}")


def validate_many(events: Iterable[dict[str, Any]]) -> None:
    for ev in events:
        validate_envelope_dict(ev)
