"""
Splitting of API responses into logical items.

A JSON array, or an object carrying a ``data``/``items`` (or configured)
array, yields one item per element; any other body is a single item. Item
file names embed an id read through an ordered list of candidate fields.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ferry.core.types import ContentType
from ferry.ingestion.content import classify, safe_file_name

DEFAULT_ID_FIELDS: Sequence[str] = ("id", "Id", "ID", "identifier", "key", "uuid")
DEFAULT_ARRAY_FIELDS: Sequence[str] = ("data", "items")

_EXTENSIONS = {
    "application/json": "json",
    "text/plain": "txt",
    "text/csv": "csv",
    "application/xml": "xml",
    "text/xml": "xml",
    "image/jpeg": "jpg",
    "image/png": "png",
}


@dataclass(frozen=True)
class ItemIdStrategy:
    """Ordered field-name candidates used to read an item's id."""

    fields: Sequence[str] = DEFAULT_ID_FIELDS

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "ItemIdStrategy":
        configured = settings.get("itemIdFields")
        if isinstance(configured, str):
            configured = [configured]
        if isinstance(configured, list):
            fields = [str(name) for name in configured if str(name).strip()]
            if fields:
                return cls(tuple(fields))
        return cls()

    def extract(self, item: Any) -> Optional[str]:
        """
        Id of ``item`` from the first candidate field it carries.

        Only string and numeric values count; the first present field wins
        even when its value is unusable.
        """
        if not isinstance(item, dict):
            return None
        for name in self.fields:
            if name not in item:
                continue
            value = item[name]
            if isinstance(value, bool):
                return None
            if isinstance(value, str):
                return value
            if isinstance(value, int):
                return str(value)
            if isinstance(value, float):
                return str(int(value)) if value.is_integer() else str(value)
            return None
        return None


@dataclass(frozen=True)
class ApiItem:
    file_name: str
    body: bytes
    content_type: ContentType


def is_json_content(media_type: Optional[str]) -> bool:
    if not media_type:
        return False
    lowered = media_type.lower()
    return "application/json" in lowered or "text/json" in lowered


def extension_for(media_type: Optional[str]) -> str:
    if not media_type:
        return "data"
    return _EXTENSIONS.get(media_type.split(";", 1)[0].strip().lower(), "data")


def split_json_payload(payload: Any, data_field: Optional[str] = None) -> List[Any]:
    if isinstance(payload, list):
        return list(payload)
    if isinstance(payload, dict):
        fields = ([data_field] if data_field else []) + list(DEFAULT_ARRAY_FIELDS)
        for name in fields:
            value = payload.get(name)
            if isinstance(value, list):
                return list(value)
    return [payload]


def _timestamp(now: datetime) -> str:
    return now.strftime("%Y%m%d_%H%M%S_") + f"{now.microsecond // 1000:03d}"


def build_items(
    body: bytes,
    media_type: Optional[str],
    source_name: str,
    *,
    strategy: Optional[ItemIdStrategy] = None,
    data_field: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[ApiItem]:
    """
    Turn one HTTP response into the items to stage and enqueue.

    Raises ValueError when a JSON content type carries a malformed body.
    """
    strategy = strategy or ItemIdStrategy()
    stamp = _timestamp(now or datetime.now(timezone.utc))
    safe_name = safe_file_name(source_name)

    if is_json_content(media_type):
        payload = json.loads(body.decode("utf-8-sig"))
        items: List[ApiItem] = []
        for element in split_json_payload(payload, data_field):
            item_id = strategy.extract(element) or uuid.uuid4().hex[:8]
            file_name = f"api_data_{safe_name}_{stamp}_{safe_file_name(item_id)}.json"
            serialized = json.dumps(element, indent=2, ensure_ascii=False).encode("utf-8")
            items.append(ApiItem(file_name, serialized, ContentType.STRUCTURED))
        return items

    file_name = f"api_response_{safe_name}_{stamp}.{extension_for(media_type)}"
    return [ApiItem(file_name, body, classify(file_name))]
