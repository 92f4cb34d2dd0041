from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS model_definitions(
                    model_key TEXT PRIMARY KEY,
                    provider TEXT,
                    provider_model TEXT,
                    is_premium INTEGER DEFAULT 0,
                    per_model_cap INTEGER,
                    fallback_model TEXT,
                    temperature_default REAL,
                    max_tokens_default INTEGER,
                    display_name TEXT,
                    enabled INTEGER DEFAULT 1
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def upsert_model(self, row: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO model_definitions(model_key, provider, provider_model, is_premium, per_model_cap, "
            "fallback_model, temperature_default, max_tokens_default, display_name, enabled) "
            "VALUES (?,?,?,?,?,?,?,?,?,?) "
            "ON CONFLICT(model_key) DO UPDATE SET provider=excluded.provider, "
            "provider_model=excluded.provider_model, is_premium=excluded.is_premium, "
            "per_model_cap=excluded.per_model_cap, fallback_model=excluded.fallback_model, "
            "temperature_default=excluded.temperature_default, max_tokens_default=excluded.max_tokens_default, "
            "display_name=excluded.display_name, enabled=excluded.enabled",
            (
                row.get("model_key"),
                row.get("provider"),
                row.get("provider_model"),
                1 if row.get("is_premium") else 0,
                row.get("per_model_cap"),
                row.get("fallback_model"),
                row.get("temperature_default"),
                row.get("max_tokens_default"),
                row.get("display_name"),
                1 if row.get("enabled", True) else 0,
            ),
        )

    async def list_enabled_models(self) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT model_key, provider, provider_model, is_premium, per_model_cap, fallback_model, "
            "temperature_default, max_tokens_default, display_name, enabled "
            "FROM model_definitions WHERE enabled=1"
        )
        return [dict(row) for row in rows]
