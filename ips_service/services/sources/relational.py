"""Relational record source - one "ipsAlt" root row plus five child tables.

Children reference the root through "IPSModelId", the root's internal id.
Every child query is scoped by that id, never by the external package id, so
a summary can only ever see its own rows.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from ips_service.errors import IPSError, PartialFetchFailure
from ips_service.models.ips import ChildKind, RawConstituents, SummaryDocument, SummaryHeader
from ips_service.services.sources.base import RecordSource

logger = logging.getLogger(__name__)

# Lowest id wins if the UNIQUE constraint on "packageUUID" is ever missing
ROOT_QUERY = """
    SELECT
        id,
        "packageUUID"         AS package_id,
        "timeStamp"           AS timestamp,
        "patientName"         AS patient_name,
        "patientGiven"        AS patient_given,
        "patientDob"          AS patient_dob,
        "patientGender"       AS patient_gender,
        "patientNation"       AS patient_nation,
        "patientPractitioner" AS patient_practitioner,
        "patientOrganization" AS patient_organization,
        "patientIdentifier"   AS patient_identifier,
        "patientIdentifier2"  AS patient_identifier2
    FROM "ipsAlt"
    WHERE "packageUUID" = ?
    ORDER BY id ASC
    LIMIT 1
"""

CHILD_QUERIES: dict[ChildKind, str] = {
    ChildKind.MEDICATIONS: """
        SELECT name, date, dosage, system, code, status
        FROM "Medications" WHERE "IPSModelId" = ? ORDER BY id
    """,
    ChildKind.ALLERGIES: """
        SELECT name, criticality, date, system, code
        FROM "Allergies" WHERE "IPSModelId" = ? ORDER BY id
    """,
    ChildKind.CONDITIONS: """
        SELECT name, date, system, code
        FROM "Conditions" WHERE "IPSModelId" = ? ORDER BY id
    """,
    ChildKind.OBSERVATIONS: """
        SELECT name, date, value, system, code,
               "valueCode" AS value_code, "bodySite" AS body_site, status
        FROM "Observations" WHERE "IPSModelId" = ? ORDER BY id
    """,
    ChildKind.IMMUNIZATIONS: """
        SELECT name, system, date, code, status
        FROM "Immunizations" WHERE "IPSModelId" = ? ORDER BY id
    """,
}

CHILD_INSERTS: dict[ChildKind, tuple[str, tuple[str, ...]]] = {
    ChildKind.MEDICATIONS: (
        'INSERT INTO "Medications" (name, date, dosage, system, code, status, "IPSModelId") '
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        ("name", "date", "dosage", "system", "code", "status"),
    ),
    ChildKind.ALLERGIES: (
        'INSERT INTO "Allergies" (name, criticality, date, system, code, "IPSModelId") '
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("name", "criticality", "date", "system", "code"),
    ),
    ChildKind.CONDITIONS: (
        'INSERT INTO "Conditions" (name, date, system, code, "IPSModelId") VALUES (?, ?, ?, ?, ?)',
        ("name", "date", "system", "code"),
    ),
    ChildKind.OBSERVATIONS: (
        'INSERT INTO "Observations" (name, date, value, system, code, "valueCode", "bodySite", status, "IPSModelId") '
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        ("name", "date", "value", "system", "code", "value_code", "body_site", "status"),
    ),
    ChildKind.IMMUNIZATIONS: (
        'INSERT INTO "Immunizations" (name, system, date, code, status, "IPSModelId") '
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("name", "system", "date", "code", "status"),
    ),
}


@dataclass
class RelationalSource(RecordSource):
    kind: str = "relational"

    async def _fetch_children(self, kind: ChildKind, root_id: int) -> list[dict]:
        rows = await self.db.fetch_all(CHILD_QUERIES[kind], (root_id,))
        return [dict(row) for row in rows]

    async def fetch_by_key(self, package_id: str) -> RawConstituents | None:
        row = await self.db.fetch_one(ROOT_QUERY, (package_id,))
        if row is None:
            return None

        root = dict(row)
        root_id = root.pop("id")

        kinds = list(ChildKind)
        results = await asyncio.gather(
            *(self._fetch_children(kind, root_id) for kind in kinds),
            return_exceptions=True,
        )

        children: dict[ChildKind, list[dict]] = {}
        failed: list[str] = []
        first_error: BaseException | None = None
        for kind, value in zip(kinds, results, strict=True):
            if isinstance(value, BaseException):
                logger.warning("Failed to fetch %s for package %s: %s", kind.value, package_id, value)
                failed.append(kind.value)
                first_error = first_error or value
            else:
                children[kind] = value

        if failed:
            if not isinstance(first_error, Exception):
                # Cancellation and interpreter exits are not store failures
                raise first_error
            raise PartialFetchFailure(package_id, failed) from first_error

        return RawConstituents(root=root, children=children)

    async def delete_by_practitioner(self, practitioner: str) -> int:
        deleted = await self.db.execute(
            'DELETE FROM "ipsAlt" WHERE "patientPractitioner" = ?',
            (practitioner,),
        )
        await self.db.commit()
        return deleted

    async def list_recent(self, limit: int) -> list[SummaryHeader]:
        rows = await self.db.fetch_all(
            """SELECT "packageUUID" AS package_id, "timeStamp" AS timestamp,
                      "patientName" AS patient_name, "patientGiven" AS patient_given,
                      "patientPractitioner" AS practitioner
               FROM "ipsAlt" ORDER BY "timeStamp" DESC, id DESC LIMIT ?""",
            (limit,),
        )
        return [SummaryHeader(**dict(row)) for row in rows]

    async def exists(self, package_id: str) -> bool:
        row = await self.db.fetch_one(
            'SELECT id FROM "ipsAlt" WHERE "packageUUID" = ? LIMIT 1', (package_id,)
        )
        return row is not None

    async def save(self, document: SummaryDocument) -> None:
        patient = document.patient
        encode = self.db.encode_datetime
        # "timeStamp" is NOT NULL here; summaries imported without one get the import time
        timestamp = document.timestamp or datetime.now(UTC).replace(tzinfo=None)
        root_id = await self.db.insert(
            """INSERT INTO "ipsAlt" (
                "packageUUID", "timeStamp", "patientName", "patientGiven", "patientDob",
                "patientGender", "patientNation", "patientPractitioner",
                "patientOrganization", "patientIdentifier", "patientIdentifier2"
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                document.package_id,
                encode(timestamp),
                patient.name,
                patient.given,
                encode(patient.dob),
                patient.gender,
                patient.nation,
                patient.practitioner,
                patient.organization,
                patient.identifier,
                patient.identifier2,
            ),
        )

        try:
            for kind in ChildKind:
                items = getattr(document, kind.value)
                if not items:
                    continue
                query, columns = CHILD_INSERTS[kind]
                params = []
                for item in items:
                    values = [encode(item.date) if col == "date" else getattr(item, col) for col in columns]
                    params.append((*values, root_id))
                await self.db.executemany(query, params)
        except IPSError:
            logger.warning("Child insert failed for %s, discarding root id %s", document.package_id, root_id)
            await self.db.rollback()
            if self.db.engine == "postgres":
                # Autocommitted root; children go with it through ON DELETE CASCADE
                await self.db.execute('DELETE FROM "ipsAlt" WHERE id = ?', (root_id,))
            raise

        await self.db.commit()
        logger.info("Stored summary %s (root id %s)", document.package_id, root_id)
