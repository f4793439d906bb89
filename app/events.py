from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, ClassVar

from jsonschema import Draft202012Validator

CONVERSION = "conversion"
INTERACTION = "interaction"
SYSTEM = "system"

KNOWN_FIELDS = frozenset(
    {
        "tenant_id",
        "session_id",
        "category",
        "action",
        "url",
        "label",
        "value",
        "meta",
        "client_ts",
        "ingest_id",
        "dedup_id",
        "received_at",
    }
)

DELIVERY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["tenant_id", "url"],
    "properties": {
        "tenant_id": {"type": "string", "minLength": 1},
        "session_id": {"type": ["string", "null"]},
        "category": {"type": ["string", "null"]},
        "action": {"type": ["string", "null"]},
        "url": {"type": "string", "minLength": 1},
        "label": {"type": ["string", "null"]},
        "value": {"type": ["number", "string", "null"]},
        "meta": {"type": ["object", "null"]},
        "client_ts": {"type": ["string", "null"]},
        "ingest_id": {"type": ["string", "null"]},
        "dedup_id": {"type": ["string", "null"]},
        "received_at": {"type": ["string", "null"]},
    },
}

_delivery_validator = Draft202012Validator(DELIVERY_SCHEMA)


class InvalidEventPayload(ValueError):
    pass


def _frozen(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class _EventFields:
    tenant_id: str
    session_id: str
    action: str
    url: str
    label: str = ""
    value: float | None = None
    meta: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    client_ts: datetime | None = None
    ingest_id: str = ""
    dedup_id: str = ""
    received_at: datetime | None = None

    category: ClassVar[str] = ""

    @property
    def category_name(self) -> str:
        return self.category

    @property
    def signal_time(self) -> datetime:
        return self.client_ts or self.received_at or datetime.now(UTC)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "session_id": self.session_id,
            "category": self.category_name,
            "action": self.action,
            "url": self.url,
            "label": self.label,
            "value": self.value,
            "meta": dict(self.meta),
            "client_ts": self.client_ts.isoformat() if self.client_ts else None,
            "ingest_id": self.ingest_id,
            "dedup_id": self.dedup_id,
            "received_at": self.received_at.isoformat() if self.received_at else None,
        }
        return payload


@dataclass(frozen=True)
class ConversionEvent(_EventFields):
    category: ClassVar[str] = CONVERSION


@dataclass(frozen=True)
class InteractionEvent(_EventFields):
    category: ClassVar[str] = INTERACTION


@dataclass(frozen=True)
class SystemEvent(_EventFields):
    category: ClassVar[str] = SYSTEM


@dataclass(frozen=True)
class OtherEvent(_EventFields):
    """Unrecognized category; unknown wire fields ride along untouched."""

    raw_category: str = ""
    opaque: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def category_name(self) -> str:
        return self.raw_category

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.opaque)
        payload.update(super().to_payload())
        return payload


InboundEvent = ConversionEvent | InteractionEvent | SystemEvent | OtherEvent

_VARIANTS: dict[str, type[_EventFields]] = {
    CONVERSION: ConversionEvent,
    INTERACTION: InteractionEvent,
    SYSTEM: SystemEvent,
}


def parse_timestamp(raw: Any) -> datetime | None:
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _as_value(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str) and raw.strip():
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return value if math.isfinite(value) else None


def _as_str(raw: Any) -> str:
    return raw.strip() if isinstance(raw, str) else ""


def validate_delivery(data: Any) -> None:
    errors = sorted(_delivery_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = ".".join(str(x) for x in first.path) or "$"
        raise InvalidEventPayload(f"{where}: {first.message}")


def parse_inbound_event(data: Mapping[str, Any]) -> InboundEvent:
    raw_category = _as_str(data.get("category"))
    meta = data.get("meta")
    fields: dict[str, Any] = {
        "tenant_id": _as_str(data.get("tenant_id")),
        "session_id": _as_str(data.get("session_id")),
        "action": _as_str(data.get("action")),
        "url": _as_str(data.get("url")),
        "label": _as_str(data.get("label")),
        "value": _as_value(data.get("value")),
        "meta": _frozen(meta if isinstance(meta, Mapping) else None),
        "client_ts": parse_timestamp(data.get("client_ts")),
        "ingest_id": _as_str(data.get("ingest_id")),
        "dedup_id": _as_str(data.get("dedup_id")),
        "received_at": parse_timestamp(data.get("received_at")),
    }
    variant = _VARIANTS.get(raw_category.lower())
    if variant is not None:
        return variant(**fields)
    opaque = {str(k): v for k, v in data.items() if str(k) not in KNOWN_FIELDS}
    return OtherEvent(**fields, raw_category=raw_category, opaque=_frozen(opaque))
