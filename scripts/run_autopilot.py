#!/usr/bin/env python3
# Enterprise Autopilot - 启动自动驾驶
"""
启动脚本

用法:
    python scripts/run_autopilot.py                                   # 调度器常驻运行
    python scripts/run_autopilot.py --company acme --department marketing --once
    python scripts/run_autopilot.py --company acme --maturity growing --maintenance
"""

import argparse
import asyncio
import json

from dotenv import load_dotenv
load_dotenv()

import structlog

from orchestrator.departments import StaticCompanyProfile
from orchestrator.engine import build_engine
from orchestrator.errors import AutopilotError
from orchestrator.models import MaturityLevel
from orchestrator.scheduler import AutopilotScheduler

logger = structlog.get_logger()


async def main(args):
    profile = StaticCompanyProfile(maturity=MaturityLevel.parse(args.maturity))
    engine = build_engine(profile=profile)

    try:
        if args.once:
            try:
                summary = await engine.run_cycle(args.company, args.department)
            except AutopilotError as e:
                logger.error("周期未能运行", **e.to_dict())
                return
            print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
            return

        if args.maintenance:
            report = await engine.run_maintenance(args.company)
            print(json.dumps(report, ensure_ascii=False, indent=2))
            return

        scheduler = AutopilotScheduler(engine, engine.settings.cycle)
        try:
            await scheduler.run_forever()
        except KeyboardInterrupt:
            await scheduler.stop()
        logger.info("调度统计", **scheduler.get_stats())
    finally:
        await engine.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Enterprise Autopilot")
    parser.add_argument("--company", default="demo", help="公司 ID")
    parser.add_argument("--department", default="marketing", help="部门（--once 时使用）")
    parser.add_argument("--maturity", default="starter", help="本地档案的公司成熟度")
    parser.add_argument("--once", action="store_true", help="只运行一次周期")
    parser.add_argument("--maintenance", action="store_true", help="只运行一次维护任务")
    asyncio.run(main(parser.parse_args()))
