"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from reconciler.deps import DbSession

    async def my_endpoint(db: DbSession):
        ...
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.database import get_db

DbSession = Annotated[AsyncSession, Depends(get_db)]

__all__ = ["DbSession"]
