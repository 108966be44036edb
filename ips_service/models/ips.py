from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Patient(_CamelModel):
    name: str
    given: str
    dob: datetime
    gender: str | None = None
    nation: str
    practitioner: str
    organization: str | None = None
    identifier: str | None = None
    identifier2: str | None = None


class Medication(_CamelModel):
    name: str
    date: datetime
    dosage: str = ""
    system: str = ""
    code: str = ""
    status: str = ""


class Allergy(_CamelModel):
    name: str
    criticality: str = ""
    date: datetime
    system: str = ""
    code: str = ""


class Condition(_CamelModel):
    name: str
    date: datetime
    system: str = ""
    code: str = ""


class Observation(_CamelModel):
    name: str
    date: datetime
    value: str = ""
    system: str = ""
    code: str = ""
    value_code: str = ""
    body_site: str = ""
    status: str = ""


class Immunization(_CamelModel):
    name: str
    system: str = ""
    date: datetime
    code: str = ""
    status: str = ""


class SummaryDocument(_CamelModel):
    """One International Patient Summary, as served to callers."""

    package_id: str
    timestamp: datetime | None = None
    patient: Patient
    medications: list[Medication] = []
    allergies: list[Allergy] = []
    conditions: list[Condition] = []
    observations: list[Observation] = []
    immunizations: list[Immunization] = []


class SummaryHeader(_CamelModel):
    package_id: str
    timestamp: datetime | None = None
    patient_name: str | None = None
    patient_given: str | None = None
    practitioner: str | None = None


class ChildKind(str, Enum):
    MEDICATIONS = "medications"
    ALLERGIES = "allergies"
    CONDITIONS = "conditions"
    OBSERVATIONS = "observations"
    IMMUNIZATIONS = "immunizations"


CHILD_MODELS: dict[ChildKind, type[_CamelModel]] = {
    ChildKind.MEDICATIONS: Medication,
    ChildKind.ALLERGIES: Allergy,
    ChildKind.CONDITIONS: Condition,
    ChildKind.OBSERVATIONS: Observation,
    ChildKind.IMMUNIZATIONS: Immunization,
}


@dataclass
class RawConstituents:
    """Store-neutral view of one summary before reconciliation.

    ``root`` holds the summary-level and patient fields under domain names
    (``package_id``, ``timestamp``, ``patient_name``, ``patient_given``, ...).
    ``children`` maps every ChildKind to its rows, each a mapping keyed by the
    entity's field names. Values may be ``None`` wherever storage allows it.
    """

    root: dict[str, Any]
    children: dict[ChildKind, list[dict[str, Any]]] = field(default_factory=dict)
