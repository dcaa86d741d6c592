# Enterprise Autopilot - 存储模块
"""
存储模块

包含:
- repository: 持久化接口
- memory: 内存实现（测试与本地开发）
- postgres: PostgreSQL 实现
- models / db: 数据表定义与建表
"""

from storage.memory import InMemoryRepository
from storage.repository import AutopilotRepository

__all__ = ["AutopilotRepository", "InMemoryRepository"]
