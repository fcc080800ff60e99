import logging
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import DateTime, String, Text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from naturelens.config.settings import settings
from naturelens.services.errors import PersistenceError

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class StateBlob(Base):
    """One serialized document per namespace, rewritten whole on every save."""

    __tablename__ = "state_blobs"

    namespace: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )


class StateStorage:
    """Durable key -> blob storage backed by SQLAlchemy's async engine."""

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or settings.database_url
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self):
        url = make_url(self.database_url)
        try:
            if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Could not open state database {url.render_as_string()}: {e}") from e

    async def read(self, namespace: str) -> str | None:
        async with self.async_session() as session:
            blob = await session.get(StateBlob, namespace)
            return blob.payload if blob else None

    async def write(self, namespace: str, payload: str):
        async with self.async_session() as session:
            blob = await session.get(StateBlob, namespace)
            if blob:
                blob.payload = payload
                blob.updated_at = datetime.now(UTC)
            else:
                session.add(StateBlob(namespace=namespace, payload=payload))
            await session.commit()
        log.debug(f"Saved {len(payload)} bytes to '{namespace}'")

    async def close(self):
        await self.engine.dispose()
