"""Summary assembler - reconciles raw store output into a SummaryDocument.

Two defaulting rules apply and must not be mixed up:
- clinical coding fields (system, code, status, dosage, ...) are always
  rendered, so a missing value becomes "";
- the patient's optional fields (gender, organization, identifier,
  identifier2) stay None when missing.

Identity-bearing fields are never defaulted. A record that lacks one raises
MalformedRecord.
"""

from typing import Any, Mapping

from pydantic import ValidationError

from ips_service.errors import MalformedRecord
from ips_service.models.ips import CHILD_MODELS, ChildKind, Patient, RawConstituents, SummaryDocument

PATIENT_REQUIRED = ("name", "given", "dob", "nation", "practitioner")
PATIENT_OPTIONAL = ("gender", "organization", "identifier", "identifier2")

CHILD_REQUIRED = ("name", "date")
CHILD_DEFAULTED: dict[ChildKind, tuple[str, ...]] = {
    ChildKind.MEDICATIONS: ("dosage", "system", "code", "status"),
    ChildKind.ALLERGIES: ("criticality", "system", "code"),
    ChildKind.CONDITIONS: ("system", "code"),
    ChildKind.OBSERVATIONS: ("value", "system", "code", "value_code", "body_site", "status"),
    ChildKind.IMMUNIZATIONS: ("system", "code", "status"),
}


def _require(record: Mapping[str, Any], key: str, kind: str, index: int | None = None) -> Any:
    value = record.get(key)
    if value is None:
        where = f"{kind}[{index}]" if index is not None else kind
        raise MalformedRecord(f"{where} is missing required field '{key}'", kind=kind, field=key, index=index)
    return value


def _assemble_patient(root: Mapping[str, Any]) -> Patient:
    fields: dict[str, Any] = {}
    for key in PATIENT_REQUIRED:
        fields[key] = _require(root, f"patient_{key}", "patient")
    for key in PATIENT_OPTIONAL:
        fields[key] = root.get(f"patient_{key}")
    try:
        return Patient(**fields)
    except ValidationError as exc:
        raise MalformedRecord(f"patient record is invalid: {exc}", kind="patient") from exc


def _assemble_children(kind: ChildKind, rows: list[Mapping[str, Any]]) -> list:
    model = CHILD_MODELS[kind]
    out = []
    for index, row in enumerate(rows):
        fields: dict[str, Any] = {key: _require(row, key, kind.value, index) for key in CHILD_REQUIRED}
        for key in CHILD_DEFAULTED[kind]:
            value = row.get(key)
            fields[key] = "" if value is None else value
        try:
            out.append(model(**fields))
        except ValidationError as exc:
            raise MalformedRecord(
                f"{kind.value}[{index}] is invalid: {exc}", kind=kind.value, index=index
            ) from exc
    return out


def assemble(raw: RawConstituents) -> SummaryDocument:
    """Build the canonical summary from one root record and its five collections.

    Child order is preserved exactly as supplied. Every ChildKind must be
    present in ``raw.children``; an absent kind is treated as malformed input
    rather than as an empty collection.
    """
    package_id = _require(raw.root, "package_id", "summary")
    patient = _assemble_patient(raw.root)

    collections = {}
    for kind in ChildKind:
        if kind not in raw.children:
            raise MalformedRecord(f"summary {package_id} has no {kind.value} collection", kind=kind.value)
        collections[kind.value] = _assemble_children(kind, raw.children[kind])

    try:
        return SummaryDocument(
            package_id=package_id,
            timestamp=raw.root.get("timestamp"),
            patient=patient,
            **collections,
        )
    except ValidationError as exc:
        raise MalformedRecord(f"summary {package_id} is invalid: {exc}", kind="summary") from exc


def disassemble(document: SummaryDocument) -> RawConstituents:
    """Inverse of assemble(): the raw view a store would hand back for ``document``."""
    root: dict[str, Any] = {
        "package_id": document.package_id,
        "timestamp": document.timestamp,
    }
    for key in PATIENT_REQUIRED + PATIENT_OPTIONAL:
        root[f"patient_{key}"] = getattr(document.patient, key)

    children = {
        kind: [item.model_dump() for item in getattr(document, kind.value)]
        for kind in ChildKind
    }
    return RawConstituents(root=root, children=children)
