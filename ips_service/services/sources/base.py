from __future__ import annotations

from dataclasses import dataclass

from ips_service.database import DatabaseAdapter
from ips_service.models.ips import RawConstituents, SummaryDocument, SummaryHeader


@dataclass
class RecordSource:
    """Capability shared by every summary store.

    Implementations fetch the raw constituents of one summary by its package
    id and delete summaries in bulk by practitioner. Neither operation knows
    about the assembled document shape.
    """

    db: DatabaseAdapter
    kind: str = ""

    async def fetch_by_key(self, package_id: str) -> RawConstituents | None:  # pragma: no cover - interface
        """Return the raw constituents for ``package_id`` or None when no root matches."""
        raise NotImplementedError

    async def delete_by_practitioner(self, practitioner: str) -> int:  # pragma: no cover - interface
        """Delete every summary whose patient practitioner matches exactly; return how many."""
        raise NotImplementedError

    async def list_recent(self, limit: int) -> list[SummaryHeader]:  # pragma: no cover - interface
        raise NotImplementedError

    async def save(self, document: SummaryDocument) -> None:  # pragma: no cover - interface
        """Store ``document`` (import and demo seeding only)."""
        raise NotImplementedError

    async def exists(self, package_id: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError
