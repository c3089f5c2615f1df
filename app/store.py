from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound
from .models import Booking, utcnow

# bounded re-read/re-validate loop for writers that lose a conditional update
MAX_WRITE_ATTEMPTS = 3


class BookingStore:
    """
    Booking persistence with conditional writes.

    Every write is one UPDATE guarded by caller-supplied conditions that also
    bumps `version` and `updated_at`. A False return means another writer won
    and the caller must re-read before deciding again.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, booking_id: str) -> Booking | None:
        res = await self.db.execute(
            select(Booking)
            .where(Booking.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def require(self, booking_id: str) -> Booking:
        booking = await self.get(booking_id)
        if not booking:
            raise NotFound()
        return booking

    async def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        await self.db.commit()
        return booking

    async def list_for_customer(self, customer_id: str, status: str | None = None) -> list[Booking]:
        return await self._list(Booking.customer_id == customer_id, status)

    async def list_for_provider(self, provider_id: str, status: str | None = None) -> list[Booking]:
        return await self._list(Booking.provider_id == provider_id, status)

    async def _list(self, party_clause, status: str | None) -> list[Booking]:
        stmt = select(Booking).where(party_clause)
        if status:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc())
        res = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(res.scalars().all())

    async def update_if(self, booking_id: str, values: dict, *conditions) -> bool:
        stmt = (
            update(Booking)
            .where(Booking.booking_id == booking_id, *conditions)
            .values(**values, version=Booking.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await self.db.execute(stmt)
        await self.db.commit()
        return res.rowcount == 1
