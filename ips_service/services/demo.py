import logging
from datetime import datetime, timedelta

from ips_service.models.ips import (
    Allergy,
    Condition,
    Immunization,
    Medication,
    Observation,
    Patient,
    SummaryDocument,
)
from ips_service.services.sources.base import RecordSource

logger = logging.getLogger(__name__)


def demo_summaries(now: datetime | None = None) -> list[SummaryDocument]:
    """A few summaries for UI previews when running with SEED_DEMO_SUMMARIES."""
    now = (now or datetime.now()).replace(microsecond=0)

    # Summary 1: chronic cardiac patient, fully coded
    s1 = SummaryDocument(
        package_id="demo-cardiac",
        timestamp=now,
        patient=Patient(
            name="Smith",
            given="John",
            dob=datetime(1979, 3, 14),
            gender="male",
            nation="GB",
            practitioner="Dr. Patel",
            organization="Greenfield Medical Center",
            identifier="NHS-4857773456",
        ),
        medications=[
            Medication(
                name="Aspirin", date=now - timedelta(days=30), dosage="75mg OD",
                system="http://snomed.info/sct", code="387458008", status="active",
            ),
            Medication(name="Atorvastatin", date=now - timedelta(days=30), dosage="20mg ON"),
        ],
        allergies=[
            Allergy(
                name="Penicillin", criticality="high", date=now - timedelta(days=3650),
                system="http://snomed.info/sct", code="373270004",
            ),
        ],
        conditions=[
            Condition(
                name="Essential hypertension", date=now - timedelta(days=900),
                system="http://snomed.info/sct", code="59621000",
            ),
        ],
        observations=[
            Observation(
                name="Blood pressure", date=now - timedelta(days=2), value="150/95 mmHg",
                system="http://loinc.org", code="85354-9", status="final",
            ),
        ],
        immunizations=[
            Immunization(
                name="Influenza vaccine", date=now - timedelta(days=200),
                system="http://snomed.info/sct", code="46233009", status="completed",
            ),
        ],
    )

    # Summary 2: sparse coding, optional patient fields absent
    s2 = SummaryDocument(
        package_id="demo-trauma",
        timestamp=now - timedelta(minutes=12),
        patient=Patient(
            name="Brooks",
            given="Ethan",
            dob=datetime(2001, 7, 2),
            nation="US",
            practitioner="Dr. Smith",
        ),
        medications=[Medication(name="Morphine", date=now - timedelta(minutes=30), dosage="5mg IV")],
        observations=[
            Observation(name="Heart rate", date=now - timedelta(minutes=25), value="132", body_site="Left radial"),
        ],
    )

    return [s1, s2]


async def seed_demo_summaries(source: RecordSource) -> int:
    """Store the demo summaries that are not already present; returns how many were added."""
    added = 0
    for document in demo_summaries():
        if await source.exists(document.package_id):
            continue
        await source.save(document)
        added += 1
    if added:
        logger.info("Seeded %d demo summaries into the %s store", added, source.kind)
    return added
