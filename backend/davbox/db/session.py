"""SQLite engine and sessions."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _set_sqlite_pragmas(dbapi_conn, _record) -> None:
    """WAL lets readers run alongside the single writer; FKs enable cascades."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Async engine plus session factory for one metadata database file.

    SQLite admits a single writer, so write transactions are serialized
    in-process through ``transaction()``; plain ``session()`` is for reads.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        # SQLAlchemy async needs sqlite+aiosqlite and path as URL
        self._engine = create_async_engine(f"sqlite+aiosqlite:///{self.db_path}", echo=False)
        event.listen(self._engine.sync_engine, "connect", _set_sqlite_pragmas)
        self._sessions = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Create tables if they do not exist."""
        # Import models so they register with Base before create_all
        from davbox.auth import models as _auth_models  # noqa: F401
        from davbox.files import models as _file_models  # noqa: F401
        from davbox.users import models as _user_models  # noqa: F401

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield an async session (context manager); commits on clean exit."""
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Like session(), holding the writer lock until commit or rollback."""
        async with self._write_lock:
            async with self.session() as session:
                yield session
