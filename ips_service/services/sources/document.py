"""Document record source - one denormalized JSON document per summary.

Stored documents follow the legacy document schema, which differs from the
served SummaryDocument in a few places:

- the package id lives in ``packageUUID`` and the import time, when present,
  in ``timeStamp``;
- medications are stored under ``medication`` (older writers) or
  ``medications``;
- observation codes use ``valueCode`` / ``bodySite``;
- dates may be plain ISO strings or extended-JSON ``{"$date": ...}`` objects;
- empty collections are usually omitted rather than stored as ``[]``.

This module owns that reconciliation. The shared assembler only ever sees
RawConstituents with domain field names.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ips_service.errors import MalformedRecord
from ips_service.models.ips import ChildKind, RawConstituents, SummaryDocument, SummaryHeader
from ips_service.services.sources.base import RecordSource

logger = logging.getLogger(__name__)

PATIENT_FIELDS = (
    "name", "given", "dob", "gender", "nation",
    "practitioner", "organization", "identifier", "identifier2",
)

# Stored collection keys, in lookup order
COLLECTION_KEYS: dict[ChildKind, tuple[str, ...]] = {
    ChildKind.MEDICATIONS: ("medication", "medications"),
    ChildKind.ALLERGIES: ("allergies",),
    ChildKind.CONDITIONS: ("conditions",),
    ChildKind.OBSERVATIONS: ("observations",),
    ChildKind.IMMUNIZATIONS: ("immunizations",),
}

STORED_FIELD_NAMES = {"valueCode": "value_code", "bodySite": "body_site"}
DOMAIN_FIELD_NAMES = {v: k for k, v in STORED_FIELD_NAMES.items()}


def _unwrap_date(value: Any) -> Any:
    """Plain value for an extended-JSON date, which may be ISO text or epoch milliseconds."""
    if not (isinstance(value, dict) and "$date" in value):
        return value
    inner = value["$date"]
    if isinstance(inner, dict) and "$numberLong" in inner:
        inner = inner["$numberLong"]
    if isinstance(inner, str):
        try:
            inner = int(inner)
        except ValueError:
            return inner
    if isinstance(inner, (int, float)) and not isinstance(inner, bool):
        # Dates before 1970 are negative
        return datetime.fromtimestamp(inner / 1000, UTC)
    return inner


def _reconcile_item(kind: ChildKind, index: int, item: Any) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise MalformedRecord(f"{kind.value}[{index}] is not an object", kind=kind.value, index=index)
    out: dict[str, Any] = {}
    for key, value in item.items():
        name = STORED_FIELD_NAMES.get(key, key)
        if name == "date":
            value = _unwrap_date(value)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            # Numeric observation values are rendered as text
            value = str(value)
        out[name] = value
    return out


def document_to_raw(body: dict[str, Any]) -> RawConstituents:
    """Reconcile one stored document into RawConstituents."""
    patient = body.get("patient")
    if not isinstance(patient, dict):
        raise MalformedRecord(
            f"document {body.get('packageUUID')} has no patient object", kind="patient"
        )

    root: dict[str, Any] = {
        "package_id": body.get("packageUUID"),
        "timestamp": _unwrap_date(body.get("timeStamp")),
    }
    for key in PATIENT_FIELDS:
        value = patient.get(key)
        root[f"patient_{key}"] = _unwrap_date(value) if key == "dob" else value

    children: dict[ChildKind, list[dict[str, Any]]] = {}
    for kind, keys in COLLECTION_KEYS.items():
        items: Any = []
        for key in keys:
            if key in body:
                items = body[key] if body[key] is not None else []
                break
        if not isinstance(items, list):
            raise MalformedRecord(f"{kind.value} is not a list", kind=kind.value)
        children[kind] = [_reconcile_item(kind, i, item) for i, item in enumerate(items)]

    return RawConstituents(root=root, children=children)


def document_to_stored(document: SummaryDocument) -> dict[str, Any]:
    """Render a SummaryDocument in the stored document schema."""
    body: dict[str, Any] = {"packageUUID": document.package_id}
    if document.timestamp is not None:
        body["timeStamp"] = document.timestamp.isoformat()
    body["patient"] = document.patient.model_dump(mode="json")

    for kind, keys in COLLECTION_KEYS.items():
        items = getattr(document, kind.value)
        body[keys[0]] = [
            {DOMAIN_FIELD_NAMES.get(k, k): v for k, v in item.model_dump(mode="json").items()}
            for item in items
        ]
    return body


def _load_body(doc_id: str, raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        body = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedRecord(f"document {doc_id} is not valid JSON", kind="summary") from exc
    if not isinstance(body, dict):
        raise MalformedRecord(f"document {doc_id} is not a JSON object", kind="summary")
    return body


@dataclass
class DocumentSource(RecordSource):
    kind: str = "document"

    def _path(self, *path: str) -> str:
        return self.db.json_path("body", path)

    async def fetch_by_key(self, package_id: str) -> RawConstituents | None:
        # Oldest document wins if a package id was ever stored twice
        row = await self.db.fetch_one(
            f"SELECT id, body FROM ips_documents WHERE {self._path('packageUUID')} = ? "
            "ORDER BY created_at ASC, id ASC LIMIT 1",
            (package_id,),
        )
        if row is None:
            return None
        return document_to_raw(_load_body(row["id"], row["body"]))

    async def delete_by_practitioner(self, practitioner: str) -> int:
        deleted = await self.db.execute(
            f"DELETE FROM ips_documents WHERE {self._path('patient', 'practitioner')} = ?",
            (practitioner,),
        )
        await self.db.commit()
        return deleted

    async def list_recent(self, limit: int) -> list[SummaryHeader]:
        # Stored timeStamp first, plain or extended-JSON; insert time when absent
        imported = (
            f"COALESCE({self.db.json_timestamp('body', ('timeStamp',))}, "
            f"{self.db.json_timestamp('body', ('timeStamp', '$date'))}, created_at)"
        )
        rows = await self.db.fetch_all(
            "SELECT id, body, created_at FROM ips_documents "
            f"ORDER BY {imported} DESC, created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        headers = []
        for row in rows:
            body = _load_body(row["id"], row["body"])
            patient = body.get("patient") or {}
            if not isinstance(patient, dict):
                raise MalformedRecord(f"document {row['id']} has no patient object", kind="patient")
            headers.append(SummaryHeader(
                package_id=body.get("packageUUID", ""),
                timestamp=_unwrap_date(body.get("timeStamp")) or row["created_at"],
                patient_name=patient.get("name"),
                patient_given=patient.get("given"),
                practitioner=patient.get("practitioner"),
            ))
        return headers

    async def exists(self, package_id: str) -> bool:
        row = await self.db.fetch_one(
            f"SELECT id FROM ips_documents WHERE {self._path('packageUUID')} = ? LIMIT 1",
            (package_id,),
        )
        return row is not None

    async def save(self, document: SummaryDocument) -> None:
        doc_id = uuid.uuid4().hex
        await self.db.execute(
            "INSERT INTO ips_documents (id, body, created_at) VALUES (?, ?, ?)",
            (
                doc_id,
                json.dumps(document_to_stored(document)),
                self.db.encode_datetime(datetime.now(UTC).replace(tzinfo=None)),
            ),
        )
        await self.db.commit()
        logger.info("Stored summary %s (document %s)", document.package_id, doc_id)
