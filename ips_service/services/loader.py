"""Summary loader - the boundary the HTTP and page layers call into.

Loader functions take an explicit RecordSource; they never look one up from
module state. Store errors propagate as StoreError subclasses and malformed
records as MalformedRecord. Only list_recent_summaries degrades instead of
raising.
"""

import logging

from ips_service.database import DatabaseAdapter
from ips_service.errors import IPSError
from ips_service.models.ips import SummaryDocument, SummaryHeader
from ips_service.services.assembler import assemble
from ips_service.services.sources.base import RecordSource
from ips_service.services.sources.document import DocumentSource
from ips_service.services.sources.relational import RelationalSource

logger = logging.getLogger(__name__)

SOURCES: dict[str, type[RecordSource]] = {
    "relational": RelationalSource,
    "document": DocumentSource,
}


def make_source(db: DatabaseAdapter, store: str) -> RecordSource:
    try:
        return SOURCES[store](db)
    except KeyError:
        raise ValueError(f"Unknown store kind {store!r}") from None


async def get_summary(source: RecordSource, package_id: str) -> SummaryDocument | None:
    """Load and assemble one summary, or None when no root record matches."""
    raw = await source.fetch_by_key(package_id)
    if raw is None:
        logger.debug("No summary found for package %s", package_id)
        return None
    return assemble(raw)


async def delete_summaries_by_practitioner(source: RecordSource, practitioner: str) -> int:
    """Delete all summaries for ``practitioner``; returns the number of roots removed."""
    deleted = await source.delete_by_practitioner(practitioner)
    logger.info("Deleted %d summaries where practitioner = %s", deleted, practitioner)
    return deleted


async def list_recent_summaries(source: RecordSource, limit: int) -> list[SummaryHeader]:
    """Most recent summary headers, best effort.

    Any failure is logged and returns an empty list so the index page still
    renders.
    """
    if limit <= 0:
        return []
    try:
        return await source.list_recent(limit)
    except (IPSError, ValueError) as exc:
        logger.warning("Listing recent summaries failed: %s", exc)
        return []
