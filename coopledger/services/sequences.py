"""Gap-free document numbers: PREFIX-YYYY-NNNNNN.

The counter row for (tenant, prefix, year) is locked ``FOR UPDATE`` and
incremented inside the caller's transaction, so two concurrent writers can
never be handed the same number.
"""

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.models.party import DocumentSequence
from coopledger.services.exceptions import ConcurrencyConflict, ValidationRejection
from coopledger.services.ledger_store import lock_row

logger = logging.getLogger(__name__)


def format_document_number(prefix: str, year: int, value: int) -> str:
    return f"{prefix}-{year}-{value:06d}"


async def next_document_number(
    db: AsyncSession, tenant_id: int, prefix: str, on: date
) -> str:
    if not prefix or not prefix.isalnum():
        raise ValidationRejection(
            f"Invalid document prefix {prefix!r}", constraint="document_prefix"
        )
    prefix = prefix.upper()
    year = on.year

    seq = await lock_row(
        db,
        select(DocumentSequence).where(
            DocumentSequence.tenant_id == tenant_id,
            DocumentSequence.prefix == prefix,
            DocumentSequence.year == year,
        ),
        "document sequence", f"{prefix}/{year}",
    )
    if seq is None:
        seq = DocumentSequence(tenant_id=tenant_id, prefix=prefix, year=year, last_value=0)
        db.add(seq)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f"Document sequence {prefix}/{year} was created concurrently"
            ) from exc

    seq.last_value += 1
    await db.flush()
    number = format_document_number(prefix, year, seq.last_value)
    logger.debug("Issued document number %s for tenant %d", number, tenant_id)
    return number
