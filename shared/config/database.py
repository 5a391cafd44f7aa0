from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
import os
from dotenv import load_dotenv

load_dotenv()

DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost") # In Docker, this will be 'postgres'
DB_PORT = os.getenv("POSTGRES_PORT", "5433")
DB_NAME = os.getenv("POSTGRES_DB", "campus_orders")

# A full DATABASE_URL (e.g. sqlite+aiosqlite:///./orders.db) wins over the POSTGRES_* parts
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)

# Empty string disables schema qualification (SQLite has no CREATE SCHEMA)
DB_SCHEMA = os.getenv("ORDER_DB_SCHEMA", "order_schema") or None

SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

engine = create_async_engine(DATABASE_URL, echo=SQL_ECHO)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

Base = declarative_base()


def qualified(table_name: str) -> str:
    """Table name as used in ForeignKey targets, schema-prefixed when schemas are on."""
    return f"{DB_SCHEMA}.{table_name}" if DB_SCHEMA else table_name


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
