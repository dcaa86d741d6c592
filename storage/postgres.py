# Enterprise Autopilot - PostgreSQL 存储
"""
PostgreSQL 存储（asyncpg）

表结构由 storage/models.py 定义，scripts/init_database.py 创建。
"""

import json
from datetime import datetime
from typing import Iterable, Optional

import asyncpg
import structlog

from orchestrator.models import (
    ApprovalRequest,
    ApprovalStatus,
    Capability,
    CapabilityStatus,
    Decision,
    DepartmentConfig,
    DepartmentType,
    ExecutionLogEntry,
    IntelligenceSignal,
    MemoryEntry,
    OutcomeEvaluation,
    Phase,
    Verdict,
)
from storage.db import asyncpg_dsn
from storage.repository import AutopilotRepository

logger = structlog.get_logger()


def _to_row(entity) -> dict:
    """实体转为按列的字典（时间字段还原为 datetime）"""
    row = entity.to_dict()
    for key, value in row.items():
        if key.endswith("_at") and isinstance(value, str):
            row[key] = datetime.fromisoformat(value)
    return row


async def _init_connection(conn) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


class _Where:
    """动态 WHERE 子句"""

    def __init__(self):
        self.clauses: list[str] = []
        self.args: list = []

    def add(self, clause: str, value) -> None:
        self.args.append(value)
        self.clauses.append(clause.format(f"${len(self.args)}"))

    def sql(self) -> str:
        return " AND ".join(self.clauses) if self.clauses else "TRUE"


class PostgresRepository(AutopilotRepository):
    """PostgreSQL 存储"""

    def __init__(self, db_url: Optional[str] = None, min_size: int = 1, max_size: int = 5):
        self.dsn = asyncpg_dsn(db_url)
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        """获取数据库连接池"""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                init=_init_connection,
            )
            logger.info("数据库连接池已创建", max_size=self.max_size)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _upsert(self, table: str, row: dict, conflict: str = "id") -> None:
        columns = list(row.keys())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != "id")
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({conflict}) DO UPDATE SET {updates}"
        )
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(sql, *row.values())

    async def _fetch(self, sql: str, *args) -> list[dict]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(sql, *args)
        return [dict(r) for r in records]

    # ========== 部门配置 ==========

    async def get_department_config(self, company_id, department):
        rows = await self._fetch(
            "SELECT * FROM department_config WHERE company_id = $1 AND department = $2",
            company_id, department.value,
        )
        return DepartmentConfig.from_dict(rows[0]) if rows else None

    async def list_department_configs(self, company_id=None, enabled_only=False):
        where = _Where()
        if company_id is not None:
            where.add("company_id = {}", company_id)
        if enabled_only:
            where.add("autopilot_enabled = {}", True)
        rows = await self._fetch(
            f"SELECT * FROM department_config WHERE {where.sql()} ORDER BY created_at",
            *where.args,
        )
        return [DepartmentConfig.from_dict(r) for r in rows]

    async def save_department_config(self, config):
        await self._upsert("department_config", _to_row(config), conflict="company_id, department")
        return config

    # ========== 决策 ==========

    async def save_decision(self, decision):
        await self._upsert("decisions", _to_row(decision))
        return decision

    async def get_decision(self, decision_id):
        rows = await self._fetch("SELECT * FROM decisions WHERE id = $1", decision_id)
        return Decision.from_dict(rows[0]) if rows else None

    async def list_decisions(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        cycle_id: Optional[str] = None,
        verdict: Optional[Verdict] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Decision]:
        where = _Where()
        where.add("company_id = {}", company_id)
        if department is not None:
            where.add("department = {}", department.value)
        if cycle_id is not None:
            where.add("cycle_id = {}", cycle_id)
        if verdict is not None:
            where.add("verdict = {}", verdict.value)
        if since is not None:
            where.add("created_at >= {}", since)
        where.args.append(limit)
        rows = await self._fetch(
            f"SELECT * FROM decisions WHERE {where.sql()} "
            f"ORDER BY created_at DESC LIMIT ${len(where.args)}",
            *where.args,
        )
        return [Decision.from_dict(r) for r in rows]

    # ========== 执行日志 ==========

    async def append_log(self, entry):
        row = _to_row(entry)
        columns = list(row.keys())
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO execution_log ({', '.join(columns)}) VALUES ({placeholders})",
                *row.values(),
            )
        return entry

    async def list_logs(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        cycle_id: Optional[str] = None,
        phase: Optional[Phase] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[ExecutionLogEntry]:
        where = _Where()
        where.add("company_id = {}", company_id)
        if department is not None:
            where.add("department = {}", department.value)
        if cycle_id is not None:
            where.add("cycle_id = {}", cycle_id)
        if phase is not None:
            where.add("phase = {}", phase.value)
        if since is not None:
            where.add("created_at >= {}", since)
        where.args.append(limit)
        rows = await self._fetch(
            f"SELECT * FROM execution_log WHERE {where.sql()} "
            f"ORDER BY created_at DESC LIMIT ${len(where.args)}",
            *where.args,
        )
        return [ExecutionLogEntry.from_dict(r) for r in rows]

    async def sum_credits(self, company_id, since):
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(
                """
                SELECT COALESCE(SUM(credits_consumed), 0)
                FROM execution_log
                WHERE company_id = $1 AND decision_id IS NOT NULL AND created_at >= $2
                """,
                company_id, since,
            )
        return int(total or 0)

    # ========== 能力 ==========

    async def save_capability(self, capability):
        await self._upsert("capabilities", _to_row(capability))
        return capability

    async def get_capability(self, company_id, department, code):
        rows = await self._fetch(
            """
            SELECT * FROM capabilities
            WHERE company_id = $1 AND department = $2 AND capability_code = $3
            """,
            company_id, department.value, code,
        )
        return Capability.from_dict(rows[0]) if rows else None

    async def list_capabilities(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        statuses: Optional[Iterable[CapabilityStatus]] = None,
    ) -> list[Capability]:
        where = _Where()
        where.add("company_id = {}", company_id)
        if department is not None:
            where.add("department = {}", department.value)
        if statuses is not None:
            where.add("status = ANY({})", [s.value for s in statuses])
        rows = await self._fetch(
            f"SELECT * FROM capabilities WHERE {where.sql()} ORDER BY created_at",
            *where.args,
        )
        return [Capability.from_dict(r) for r in rows]

    # ========== 审批 ==========

    async def save_approval(self, approval):
        await self._upsert("approvals", _to_row(approval))
        return approval

    async def get_approval(self, approval_id):
        rows = await self._fetch("SELECT * FROM approvals WHERE id = $1", approval_id)
        return ApprovalRequest.from_dict(rows[0]) if rows else None

    async def list_approvals(self, company_id, status=None, department=None):
        where = _Where()
        where.add("company_id = {}", company_id)
        if status is not None:
            where.add("status = {}", status.value)
        if department is not None:
            where.add("department = {}", department.value)
        rows = await self._fetch(
            f"SELECT * FROM approvals WHERE {where.sql()} ORDER BY created_at",
            *where.args,
        )
        return [ApprovalRequest.from_dict(r) for r in rows]

    async def update_approval_if_pending(self, approval):
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE approvals
                SET status = $2, reviewer_id = $3, reviewed_at = $4, notes = $5
                WHERE id = $1 AND status = $6
                """,
                approval.id,
                approval.status.value,
                approval.reviewer_id,
                approval.reviewed_at,
                approval.notes,
                ApprovalStatus.PENDING_REVIEW.value,
            )
        # asyncpg 返回 "UPDATE <n>"
        return result.split()[-1] == "1"

    # ========== 记忆 ==========

    async def save_lesson(self, lesson):
        await self._upsert("memory", _to_row(lesson))
        return lesson

    async def list_lessons(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        decision_type: Optional[str] = None,
        evaluations: Optional[Iterable[OutcomeEvaluation]] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryEntry]:
        where = _Where()
        where.add("company_id = {}", company_id)
        if department is not None:
            where.add("department = {}", department.value)
        if decision_type is not None:
            where.add("decision_type = {}", decision_type)
        if evaluations is not None:
            where.add("outcome_evaluation = ANY({})", [e.value for e in evaluations])
        if since is not None:
            where.add("created_at >= {}", since)
        if before is not None:
            where.add("created_at < {}", before)
        sql = f"SELECT * FROM memory WHERE {where.sql()} ORDER BY created_at DESC"
        if limit is not None:
            where.args.append(limit)
            sql += f" LIMIT ${len(where.args)}"
        rows = await self._fetch(sql, *where.args)
        return [MemoryEntry.from_dict(r) for r in rows]

    # ========== 情报缓存 ==========

    async def save_signal(self, signal):
        await self._upsert("intelligence_cache", _to_row(signal))
        return signal

    async def list_signals(self, company_id, since=None, valid_at=None, limit=50):
        where = _Where()
        where.add("company_id = {}", company_id)
        if since is not None:
            where.add("fetched_at >= {}", since)
        if valid_at is not None:
            where.add("(expires_at IS NULL OR expires_at > {})", valid_at)
        where.args.append(limit)
        rows = await self._fetch(
            f"SELECT * FROM intelligence_cache WHERE {where.sql()} "
            f"ORDER BY fetched_at DESC LIMIT ${len(where.args)}",
            *where.args,
        )
        return [IntelligenceSignal.from_dict(r) for r in rows]
