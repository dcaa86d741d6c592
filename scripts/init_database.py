#!/usr/bin/env python3
"""
Enterprise Autopilot - 数据库初始化脚本

功能：
1. 创建全部数据表（部门配置、决策、执行日志、能力、审批、经验、情报缓存）
2. 可选：按公司当前成熟度自动解锁部门

用法:
    python scripts/init_database.py
    python scripts/init_database.py --company acme --maturity growing
"""

import argparse
import asyncio

from dotenv import load_dotenv
load_dotenv()

from orchestrator.departments import StaticCompanyProfile
from orchestrator.engine import build_engine
from orchestrator.models import MaturityLevel
from storage.db import close_db, database_url, init_db


async def main(args):
    url = database_url(args.database_url)
    print(f"\n📦 初始化数据库: {url.split('@')[-1]}")
    await init_db(url)
    await close_db()
    print("✅ 数据表已创建")

    if not args.company:
        return

    from storage.postgres import PostgresRepository

    profile = StaticCompanyProfile(maturity=MaturityLevel.parse(args.maturity))
    engine = build_engine(repository=PostgresRepository(url), profile=profile)
    try:
        unlocked = await engine.unlock_departments(args.company)
        names = ", ".join(c.department.value for c in unlocked) or "无"
        print(f"🔓 {args.company} 已解锁部门: {names}")
    finally:
        await engine.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="初始化 Enterprise Autopilot 数据库")
    parser.add_argument("--database-url", default=None, help="默认读取 DATABASE_URL")
    parser.add_argument("--company", default=None, help="需要解锁部门的公司 ID")
    parser.add_argument("--maturity", default="starter", help="公司成熟度（starter/growing/established/scaling）")
    asyncio.run(main(parser.parse_args()))
