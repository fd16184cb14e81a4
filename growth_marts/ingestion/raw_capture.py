"""
Raw Capture

Appends connector exports to the raw event log without interpreting them.
Every record is keyed by (source, entity, external_id); capturing the same
record again replaces its payload and cursor in place, so replaying an export
never grows the log.

Example:
    async with db.session() as session:
        written = await ingest_raw(session, records)
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import hashlib
import json

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.database.models import RawEvent
from growth_marts.database.upsert import upsert_many

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 500


class RawRecord(BaseModel):
    """One connector record as handed to the pipeline"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: str = Field(min_length=1, max_length=50)
    entity: str = Field(min_length=1, max_length=50)
    external_id: Optional[str] = Field(default=None, alias="externalId", max_length=255)
    cursor: Optional[str] = Field(default=None, max_length=255)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id", "cursor", mode="before")
    @classmethod
    def coerce_to_text(cls, v: Any) -> Optional[str]:
        """Connectors hand out numeric ids and cursors; store them as text"""
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("source", "entity")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.strip().lower()

    def key(self) -> Tuple[str, str, str]:
        return (self.source, self.entity, self.external_id or payload_fingerprint(self.payload))


def payload_fingerprint(payload: Dict[str, Any]) -> str:
    """Deterministic id for records that arrive without one: sha256 of canonical JSON"""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_records(records: Iterable[Dict[str, Any]]) -> Tuple[List[RawRecord], int]:
    """
    Validate inbound dicts, dropping the ones that are not records at all.

    Returns:
        (valid records, number rejected)
    """
    parsed: List[RawRecord] = []
    rejected = 0
    for index, record in enumerate(records):
        try:
            parsed.append(RawRecord.model_validate(record))
        except ValidationError as e:
            rejected += 1
            logger.warning(
                "Rejected raw record",
                index=index,
                errors=[err["loc"] for err in e.errors()],
            )
    return parsed, rejected


async def ingest_raw(
    session: AsyncSession,
    records: Iterable[Dict[str, Any]],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """
    Upsert records into the raw event log.

    Args:
        session: Active session; the caller owns the transaction
        records: Inbound dicts with camelCase or snake_case keys
        batch_size: Records written per statement

    Returns:
        Number of rows written (inserted or overwritten)
    """
    parsed, rejected = parse_records(records)
    fetched_at = datetime.utcnow()
    written = 0

    for batch_no, start in enumerate(range(0, len(parsed), batch_size), start=1):
        # Last occurrence wins when a batch repeats a key
        rows: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        for record in parsed[start:start + batch_size]:
            source, entity, external_id = record.key()
            rows[(source, entity, external_id)] = {
                "source": source,
                "entity": entity,
                "external_id": external_id,
                "cursor": record.cursor,
                "payload": record.payload,
                "fetched_at": fetched_at,
            }

        count = await upsert_many(
            session,
            RawEvent,
            list(rows.values()),
            conflict_columns=["source", "entity", "external_id"],
            update_columns=["cursor", "payload", "fetched_at"],
            chunk_size=batch_size,
        )
        written += count
        logger.info("Raw batch captured", batch=batch_no, rows=count)

    logger.info("Raw capture complete", written=written, rejected=rejected)
    return written
