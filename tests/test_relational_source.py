"""Tests for the relational record source - root lookup, fan-out and delete."""

import pytest

from ips_service.errors import ConstraintViolation, PartialFetchFailure, StoreUnavailable
from ips_service.models.ips import ChildKind
from ips_service.services.loader import get_summary


async def _insert_root(db, package_id, practitioner="Dr. Smith", **extra):
    return await db.insert(
        """INSERT INTO "ipsAlt" ("packageUUID", "timeStamp", "patientName", "patientGiven",
               "patientDob", "patientNation", "patientPractitioner", "patientGender")
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            package_id,
            extra.get("timestamp", "2025-01-15T09:30:00"),
            "Doe",
            "Jane",
            "1980-05-17T00:00:00",
            "IE",
            practitioner,
            extra.get("gender"),
        ),
    )


async def test_medication_with_null_coding_fields(db, relational_source):
    root_id = await _insert_root(db, "abc-123")
    await db.execute(
        'INSERT INTO "Medications" (name, date, dosage, system, code, status, "IPSModelId") '
        "VALUES (?, ?, ?, NULL, NULL, NULL, ?)",
        ("Metformin", "2024-11-02T00:00:00", "500mg", root_id),
    )
    await db.commit()

    doc = await get_summary(relational_source, "abc-123")
    assert doc is not None
    assert doc.patient.practitioner == "Dr. Smith"
    assert len(doc.medications) == 1
    med = doc.medications[0]
    assert med.dosage == "500mg"
    assert med.system == ""
    assert med.code == ""
    assert med.status == ""
    assert doc.patient.gender is None


async def test_not_found_returns_none(relational_source):
    assert await relational_source.fetch_by_key("missing") is None
    assert await get_summary(relational_source, "missing") is None


async def test_lookup_is_exact_match(db, relational_source):
    await _insert_root(db, "abc-123")
    await db.commit()
    assert await relational_source.fetch_by_key("abc-12") is None
    assert await relational_source.fetch_by_key("abc-123%") is None
    assert await relational_source.fetch_by_key("ABC-123") is None


async def test_empty_collections_are_present(db, relational_source):
    await _insert_root(db, "abc-123")
    await db.commit()
    raw = await relational_source.fetch_by_key("abc-123")
    assert set(raw.children) == set(ChildKind)
    assert all(rows == [] for rows in raw.children.values())


async def test_children_scoped_to_parent(db, relational_source):
    first = await _insert_root(db, "pkg-1")
    second = await _insert_root(db, "pkg-2")
    await db.execute(
        'INSERT INTO "Conditions" (name, date, "IPSModelId") VALUES (?, ?, ?)',
        ("Asthma", "2001-01-01T00:00:00", first),
    )
    await db.execute(
        'INSERT INTO "Conditions" (name, date, "IPSModelId") VALUES (?, ?, ?)',
        ("Gout", "2015-01-01T00:00:00", second),
    )
    await db.commit()

    doc = await get_summary(relational_source, "pkg-2")
    assert [c.name for c in doc.conditions] == ["Gout"]


async def test_child_rows_keep_insertion_order(db, relational_source):
    root_id = await _insert_root(db, "abc-123")
    for name in ("Zinc", "Aspirin", "Magnesium"):
        await db.execute(
            'INSERT INTO "Medications" (name, date, dosage, "IPSModelId") VALUES (?, ?, ?, ?)',
            (name, "2024-01-01T00:00:00", "1 tab", root_id),
        )
    await db.commit()
    doc = await get_summary(relational_source, "abc-123")
    assert [m.name for m in doc.medications] == ["Zinc", "Aspirin", "Magnesium"]


async def test_observation_columns_renamed(db, relational_source):
    root_id = await _insert_root(db, "abc-123")
    await db.execute(
        'INSERT INTO "Observations" (name, date, value, "valueCode", "bodySite", "IPSModelId") '
        "VALUES (?, ?, ?, ?, ?, ?)",
        ("Blood pressure", "2025-01-01T00:00:00", "120/80", "mm[Hg]", "Left arm", root_id),
    )
    await db.commit()
    raw = await relational_source.fetch_by_key("abc-123")
    row = raw.children[ChildKind.OBSERVATIONS][0]
    assert row["value_code"] == "mm[Hg]"
    assert row["body_site"] == "Left arm"
    assert "valueCode" not in row


async def test_partial_fetch_failure(db, relational_source, monkeypatch):
    root_id = await _insert_root(db, "abc-123")
    await db.execute(
        'INSERT INTO "Medications" (name, date, dosage, "IPSModelId") VALUES (?, ?, ?, ?)',
        ("Metformin", "2024-11-02T00:00:00", "500mg", root_id),
    )
    await db.commit()

    original = db.fetch_all

    async def flaky_fetch_all(query, params=None):
        if '"Allergies"' in query:
            raise StoreUnavailable("allergies table unreachable")
        return await original(query, params)

    monkeypatch.setattr(db, "fetch_all", flaky_fetch_all)

    with pytest.raises(PartialFetchFailure) as exc_info:
        await get_summary(relational_source, "abc-123")
    assert exc_info.value.failed == ["allergies"]
    assert exc_info.value.package_id == "abc-123"
    assert isinstance(exc_info.value.__cause__, StoreUnavailable)


async def test_root_lookup_failure_is_not_partial(db, relational_source, monkeypatch):
    async def broken_fetch_one(query, params=None):
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(db, "fetch_one", broken_fetch_one)
    with pytest.raises(StoreUnavailable):
        await relational_source.fetch_by_key("abc-123")


async def test_delete_by_practitioner(db, relational_source):
    await _insert_root(db, "pkg-1", practitioner="Dr. Smith")
    await _insert_root(db, "pkg-2", practitioner="Dr. Smith")
    await _insert_root(db, "pkg-3", practitioner="Dr. Smithers")
    await db.commit()

    assert await relational_source.delete_by_practitioner("Dr. Smith") == 2
    assert await relational_source.fetch_by_key("pkg-1") is None
    assert await relational_source.fetch_by_key("pkg-2") is None
    assert await relational_source.fetch_by_key("pkg-3") is not None


async def test_delete_cascades_to_children(db, relational_source):
    root_id = await _insert_root(db, "pkg-1")
    await db.execute(
        'INSERT INTO "Allergies" (name, date, "IPSModelId") VALUES (?, ?, ?)',
        ("Latex", "2010-01-01T00:00:00", root_id),
    )
    await db.commit()

    await relational_source.delete_by_practitioner("Dr. Smith")
    row = await db.fetch_one('SELECT COUNT(*) AS cnt FROM "Allergies"')
    assert row["cnt"] == 0


async def test_delete_no_match(relational_source):
    assert await relational_source.delete_by_practitioner("Dr. Nobody") == 0


async def test_save_and_fetch(relational_source, make_summary):
    doc = make_summary()
    await relational_source.save(doc)
    assert await relational_source.exists("abc-123")
    assert await get_summary(relational_source, "abc-123") == doc


async def test_save_without_timestamp_uses_import_time(relational_source, make_summary):
    await relational_source.save(make_summary(timestamp=None))
    doc = await get_summary(relational_source, "abc-123")
    assert doc.timestamp is not None


async def test_list_recent_orders_by_timestamp(db, relational_source):
    await _insert_root(db, "old", timestamp="2024-01-01T00:00:00")
    await _insert_root(db, "new", timestamp="2025-06-01T00:00:00")
    await _insert_root(db, "mid", timestamp="2024-08-01T00:00:00")
    await db.commit()

    headers = await relational_source.list_recent(2)
    assert [h.package_id for h in headers] == ["new", "mid"]
    assert headers[0].practitioner == "Dr. Smith"
    assert headers[0].patient_name == "Doe"


async def test_failed_child_insert_leaves_no_summary(db, relational_source, make_summary, monkeypatch):
    original = db.executemany

    async def flaky_executemany(query, seq_params):
        if '"Allergies"' in query:
            raise StoreUnavailable("allergies table unreachable")
        return await original(query, seq_params)

    monkeypatch.setattr(db, "executemany", flaky_executemany)

    with pytest.raises(StoreUnavailable):
        await relational_source.save(make_summary())
    await db.commit()

    assert await relational_source.fetch_by_key("abc-123") is None
    row = await db.fetch_one('SELECT COUNT(*) AS cnt FROM "Medications"')
    assert row["cnt"] == 0


async def test_duplicate_save_is_constraint_violation(relational_source, make_summary):
    await relational_source.save(make_summary())
    with pytest.raises(ConstraintViolation):
        await relational_source.save(make_summary())
    doc = await get_summary(relational_source, "abc-123")
    assert len(doc.medications) == 2
