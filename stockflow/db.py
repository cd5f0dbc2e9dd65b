"""
データベース接続

各サービスは独自のデータベースを持つ (Database per Service)。
テーブル定義は order/tables.py と inventory/tables.py にある。
"""

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def make_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def make_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    """テーブルがなければ作成する (ローカル実行・テスト用)。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
