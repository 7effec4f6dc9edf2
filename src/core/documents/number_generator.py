from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.documents.models import DocumentSequence


class DocumentNumberGenerator:
    """
    Generates sequential document numbers in format: PREFIX-YYYY-NNNNNN

    Examples:
        REQ-2026-000001  (transfer requisition)
        RCV-2026-000042  (external goods receipt)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def generate(self, prefix: str, year: int | None = None) -> str:
        """
        Generate next document number for given prefix and year.

        Uses SELECT FOR UPDATE so concurrent requisitions never share a number.
        """
        prefix = prefix.strip().upper()
        if not prefix:
            raise ValueError("Document prefix must not be empty")
        if year is None:
            year = datetime.now(timezone.utc).year

        stmt = (
            select(DocumentSequence)
            .where(DocumentSequence.prefix == prefix, DocumentSequence.year == year)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        sequence = result.scalar_one_or_none()

        if sequence is None:
            sequence = DocumentSequence(prefix=prefix, year=year, last_number=0)
            self.session.add(sequence)
            await self.session.flush()

            # Re-fetch with lock
            result = await self.session.execute(stmt)
            sequence = result.scalar_one()

        sequence.last_number += 1
        await self.session.flush()

        return f"{prefix}-{year}-{sequence.last_number:06d}"


async def get_document_number(session: AsyncSession, prefix: str, year: int | None = None) -> str:
    """Convenience function to generate a document number."""
    generator = DocumentNumberGenerator(session)
    return await generator.generate(prefix, year)
