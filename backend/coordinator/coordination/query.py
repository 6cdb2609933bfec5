"""
Lazy, restartable query results.

Nothing runs until the sequence is iterated, and every new iteration
re-executes the statement against current state.
"""

from typing import AsyncIterator, Generic, List, Optional, TypeVar

from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


class LazyQuery(Generic[T]):

    def __init__(self, db: AsyncSession, stmt: Select):
        self.db = db
        self.stmt = stmt

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        result = await self.db.execute(self.stmt)
        for row in result.scalars():
            yield row

    async def all(self) -> List[T]:
        return [row async for row in self]

    async def first(self) -> Optional[T]:
        async for row in self:
            return row
        return None

    async def count(self) -> int:
        return len(await self.all())
