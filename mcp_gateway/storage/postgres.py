from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence

from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from mcp_gateway.logging import get_logger
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.models import ApiKeyRecord, RequestLogEntry

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


class PostgresStore:
    """Postgres-backed durable store for API keys, context logs and request logs.

    All access goes through an async connection pool so no call blocks the
    event loop. The pool is opened by :meth:`connect`, which is safe to call
    more than once.
    """

    REQUIRED_TABLES = ("api_key", "context_log", "request_log")

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._opened = False

    @property
    def is_connected(self) -> bool:
        return self._opened

    def _connect(self):
        return self.pool.connection()

    async def connect(self, *, verify_schema: bool = True) -> None:
        if self._opened:
            return
        try:
            await self.pool.open(wait=True)
        except PsycopgError as exc:
            raise StoreError(
                "failed to open Postgres pool", {"operation": "connect", "raw": str(exc)}
            ) from exc
        self._opened = True
        if verify_schema:
            await self._verify_required_schema()

    async def close(self) -> None:
        if not self._opened:
            return
        await self.pool.close()
        self._opened = False

    async def apply_schema(self) -> None:
        """Create the gateway tables if they are missing."""
        sql = SCHEMA_PATH.read_text()
        try:
            async with self._connect() as conn:
                await conn.execute(sql)
        except PsycopgError as exc:
            raise StoreError(
                "failed to apply schema", {"operation": "apply_schema", "raw": str(exc)}
            ) from exc
        self.logger.info("postgres_schema_applied", path=str(SCHEMA_PATH))

    async def _verify_required_schema(self) -> None:
        missing_tables = []
        for table in self.REQUIRED_TABLES:
            row = await self._fetchone(
                "verify_schema", "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
            )
            if not row or not row.get("oid"):
                missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/create_api_key.py --apply-schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    async def _fetchone(
        self, operation: str, sql: str, params: Sequence[Any]
    ) -> Optional[dict]:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(sql, params)
                return await cur.fetchone()
        except PsycopgError as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(
                f"database error during {operation}",
                {"operation": operation, "raw": str(exc)},
            ) from exc

    async def _fetchall(
        self, operation: str, sql: str, params: Sequence[Any]
    ) -> List[dict]:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(sql, params)
                return await cur.fetchall()
        except PsycopgError as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreError(
                f"database error during {operation}",
                {"operation": operation, "raw": str(exc)},
            ) from exc

    @staticmethod
    def _api_key_from_row(row: dict) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=row.get("id"),
            api_key=row["api_key"],
            user_id=str(row["user_id"]),
            expires_at=row.get("expires_at"),
            usage_limit=row.get("usage_limit"),
            usage_count=row.get("usage_count") or 0,
            created_at=row.get("created_at"),
        )

    async def get_api_key(self, api_key: str) -> Optional[ApiKeyRecord]:
        row = await self._fetchone(
            "get_api_key",
            """
            SELECT id, api_key, user_id, expires_at, usage_limit, usage_count, created_at
            FROM api_key WHERE api_key = %s LIMIT 1
            """,
            (api_key,),
        )
        if not row:
            return None
        return self._api_key_from_row(row)

    async def increment_usage_count(self, api_key: str) -> None:
        await self._fetchone(
            "increment_usage_count",
            "UPDATE api_key SET usage_count = usage_count + 1 WHERE api_key = %s RETURNING id",
            (api_key,),
        )

    async def create_api_key(
        self,
        api_key: str,
        user_id: str,
        *,
        expires_at: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> ApiKeyRecord:
        row = await self._fetchone(
            "create_api_key",
            """
            INSERT INTO api_key (api_key, user_id, expires_at, usage_limit)
            VALUES (%s, %s, %s, %s)
            RETURNING id, api_key, user_id, expires_at, usage_limit, usage_count, created_at
            """,
            (api_key, user_id, expires_at, usage_limit),
        )
        return self._api_key_from_row(row)

    async def insert_context_entry(
        self, user_id: str, session_id: str, payload: Any
    ) -> int:
        row = await self._fetchone(
            "insert_context_entry",
            """
            INSERT INTO context_log (user_id, session_id, context_data)
            VALUES (%s, %s, %s)
            RETURNING id
            """,
            (user_id, session_id, Jsonb(payload)),
        )
        return row["id"]

    async def latest_context_entry(self, user_id: str) -> Any:
        row = await self._fetchone(
            "latest_context_entry",
            """
            SELECT context_data FROM context_log
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (user_id,),
        )
        if not row:
            return None
        return row.get("context_data")

    async def insert_request_log(self, entry: RequestLogEntry) -> int:
        row = await self._fetchone(
            "insert_request_log",
            """
            INSERT INTO request_log
                (user_id, tool_used, request_payload, response_payload, processing_time_ms, status)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                entry.user_id,
                entry.tool_used,
                Jsonb(entry.request_payload),
                Jsonb(entry.response_payload),
                entry.processing_time_ms,
                entry.status,
            ),
        )
        return row["id"]

    async def list_request_logs(
        self, user_id: str, limit: int = 50
    ) -> List[RequestLogEntry]:
        rows = await self._fetchall(
            "list_request_logs",
            """
            SELECT id, user_id, tool_used, request_payload, response_payload,
                   processing_time_ms, status, created_at
            FROM request_log
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [
            RequestLogEntry(
                id=row["id"],
                user_id=str(row["user_id"]),
                tool_used=row["tool_used"],
                request_payload=row.get("request_payload") or {},
                response_payload=row.get("response_payload") or {},
                processing_time_ms=row.get("processing_time_ms"),
                status=row.get("status") or "success",
                created_at=row["created_at"],
            )
            for row in rows
        ]
