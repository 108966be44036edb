import os
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory DB, no seeding for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_SUMMARIES"] = "false"
os.environ["IPS_STORE"] = "relational"

from ips_service.config import StoreSettings
from ips_service.database import connect_store
from ips_service.main import app
from ips_service.models.ips import (
    Allergy,
    Condition,
    Immunization,
    Medication,
    Observation,
    Patient,
    SummaryDocument,
)
from ips_service.services.sources.document import DocumentSource
from ips_service.services.sources.relational import RelationalSource


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database with both schemas for each test."""
    database = await connect_store(StoreSettings(database_path=":memory:"))
    yield database
    await database.close()


@pytest.fixture
def relational_source(db):
    return RelationalSource(db)


@pytest.fixture
def document_source(db):
    return DocumentSource(db)


@pytest.fixture(params=["relational", "document"])
def source(request, db):
    """Run a test once against each store variant."""
    if request.param == "relational":
        return RelationalSource(db)
    return DocumentSource(db)


@pytest.fixture
def make_summary():
    """Factory for fully populated summaries."""

    def _make(package_id: str = "abc-123", practitioner: str = "Dr. Smith", **overrides) -> SummaryDocument:
        fields = dict(
            package_id=package_id,
            timestamp=datetime(2025, 1, 15, 9, 30),
            patient=Patient(
                name="Doe",
                given="Jane",
                dob=datetime(1980, 5, 17),
                gender="female",
                nation="IE",
                practitioner=practitioner,
                organization="St. James Hospital",
                identifier="PPS-1234567T",
            ),
            medications=[
                Medication(
                    name="Metformin", date=datetime(2024, 11, 2), dosage="500mg",
                    system="http://snomed.info/sct", code="109081006", status="active",
                ),
                Medication(name="Lisinopril", date=datetime(2024, 12, 1), dosage="10mg"),
            ],
            allergies=[Allergy(name="Penicillin", criticality="high", date=datetime(2010, 6, 1))],
            conditions=[
                Condition(
                    name="Type 2 diabetes", date=datetime(2019, 3, 3),
                    system="http://snomed.info/sct", code="44054006",
                ),
            ],
            observations=[
                Observation(
                    name="HbA1c", date=datetime(2025, 1, 10), value="7.1", value_code="%",
                    body_site="", system="http://loinc.org", code="4548-4", status="final",
                ),
            ],
            immunizations=[Immunization(name="Tetanus", date=datetime(2018, 9, 9), status="completed")],
        )
        fields.update(overrides)
        return SummaryDocument(**fields)

    return _make


@pytest_asyncio.fixture
async def async_client(source):
    """Async httpx client against the app, backed by the parametrized source."""
    app.state.db = source.db
    app.state.source = source
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
