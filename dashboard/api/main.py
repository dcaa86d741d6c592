# Enterprise Autopilot - Dashboard API
"""
FastAPI 后端入口

核心端点:
- /api/companies/{company_id}/departments: 部门状态、开关、运行周期
- /api/companies/{company_id}/approvals: 待审批决策
- /api/approvals/{approval_id}/resolve: 审批处理
- /api/companies/{company_id}/capabilities: 能力生命周期
- /api/companies/{company_id}/decisions: 决策记录
- /api/companies/{company_id}/execution-log: 执行日志
- /api/companies/{company_id}/lessons: 经验记忆
- /api/companies/{company_id}/iq: 企业智商
- /api/companies/{company_id}/intelligence: 外部情报写入
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

# 加载环境变量
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import structlog

from dashboard.api.models import (
    ActivateCapabilityRequest,
    CancelCycleResponse,
    CreditStatusResponse,
    EnterpriseIQResponse,
    HealthResponse,
    IngestIntelligenceRequest,
    OutcomeReport,
    RejectCapabilityRequest,
    ResolveApprovalRequest,
    ToggleAutopilotRequest,
)
from orchestrator.engine import AutopilotEngine, build_engine
from orchestrator.errors import (
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    AutopilotError,
    BudgetExhaustedError,
    CapabilityNotFoundError,
    CycleInFlightError,
    DecisionNotFoundError,
    DepartmentDisabledError,
    DepartmentLockedError,
    DuplicateDispatchError,
    GuardrailEvaluationError,
    InvalidTransitionError,
    PrerequisiteError,
    ReviewerTierError,
    UnknownAgentError,
    UnknownDepartmentError,
)

logger = structlog.get_logger()


# ============================================
# 异常映射
# ============================================

ERROR_STATUS = [
    ((ApprovalNotFoundError, CapabilityNotFoundError, DecisionNotFoundError), 404),
    ((CycleInFlightError, ApprovalAlreadyResolvedError, InvalidTransitionError,
      DuplicateDispatchError, DepartmentDisabledError, BudgetExhaustedError), 409),
    ((ReviewerTierError,), 403),
    ((DepartmentLockedError, PrerequisiteError, UnknownDepartmentError,
      UnknownAgentError, GuardrailEvaluationError), 422),
]


def status_for(error: AutopilotError) -> int:
    for types, status in ERROR_STATUS:
        if isinstance(error, types):
            return status
    return 400


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


# ============================================
# 应用工厂
# ============================================

def create_app(engine: Optional[AutopilotEngine] = None) -> FastAPI:
    """创建 API 应用

    传入 engine 时直接使用（测试）；否则在启动时按配置装配，关闭时释放。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.engine is None
        if owned:
            app.state.engine = build_engine()
        logger.info("Enterprise Autopilot API 启动")
        yield
        if owned:
            await app.state.engine.close()
            app.state.engine = None
        logger.info("Enterprise Autopilot API 关闭")

    app = FastAPI(
        title="Enterprise Autopilot API",
        description="企业自动驾驶治理引擎 API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AutopilotError)
    async def autopilot_error_handler(request: Request, exc: AutopilotError):
        status = status_for(exc)
        logger.info("请求被拒绝", path=request.url.path, status=status, error_code=exc.error_code)
        return JSONResponse(status_code=status, content={"detail": exc.to_dict()})

    def get_engine() -> AutopilotEngine:
        return app.state.engine

    # ============================================
    # 健康检查
    # ============================================

    @app.get("/api/health", response_model=HealthResponse, tags=["System"])
    async def health():
        engine = get_engine()
        return HealthResponse(
            decision_engine=engine.settings.decision_engine,
            agents=len(engine.agent_registry.list_agents()),
            active_cycles=len(engine.leases.active()),
        )

    # ============================================
    # 部门
    # ============================================

    @app.get("/api/companies/{company_id}/departments", tags=["Departments"])
    async def list_departments(company_id: str):
        """部门状态（成熟度门槛、开关、当日额度）"""
        return {"departments": await get_engine().list_departments(company_id)}

    @app.post("/api/companies/{company_id}/departments/unlock", tags=["Departments"])
    async def unlock_departments(company_id: str):
        """按当前成熟度自动解锁部门"""
        unlocked = await get_engine().unlock_departments(company_id)
        return {"unlocked": [c.department.value for c in unlocked]}

    @app.post("/api/companies/{company_id}/departments/{department}/autopilot", tags=["Departments"])
    async def toggle_autopilot(company_id: str, department: str, request: ToggleAutopilotRequest):
        result = await get_engine().toggle_autopilot(company_id, department, request.enabled)
        if not result.success:
            return JSONResponse(status_code=422, content=result.to_dict())
        return result.to_dict()

    @app.get(
        "/api/companies/{company_id}/departments/{department}/credits",
        response_model=CreditStatusResponse,
        tags=["Departments"],
    )
    async def credit_status(company_id: str, department: str):
        budget = await get_engine().credit_status(company_id, department)
        return {**budget.to_dict(), "headroom": budget.headroom()}

    # ============================================
    # 周期
    # ============================================

    @app.post("/api/companies/{company_id}/departments/{department}/cycles", tags=["Cycles"])
    async def run_cycle(company_id: str, department: str):
        """手动触发一次周期"""
        summary = await get_engine().run_cycle(company_id, department)
        return summary.to_dict()

    @app.post(
        "/api/companies/{company_id}/departments/{department}/cycles/cancel",
        response_model=CancelCycleResponse,
        tags=["Cycles"],
    )
    async def cancel_cycle(company_id: str, department: str):
        engine = get_engine()
        requested = engine.cancel_cycle(company_id, department)
        lease = engine.leases.get(company_id, engine.departments.parse_department(department))
        return CancelCycleResponse(
            cancel_requested=requested,
            cycle_id=lease.cycle_id if lease else None,
        )

    # ============================================
    # 审批
    # ============================================

    @app.get("/api/companies/{company_id}/approvals", tags=["Approvals"])
    async def list_pending_approvals(company_id: str, department: Optional[str] = None):
        approvals = await get_engine().list_pending_approvals(company_id, department)
        return {"approvals": [a.to_dict() for a in approvals]}

    @app.post("/api/approvals/{approval_id}/resolve", tags=["Approvals"])
    async def resolve_approval(approval_id: str, request: ResolveApprovalRequest):
        result = await get_engine().resolve_approval(
            approval_id,
            request.approved,
            request.reviewer_id,
            request.reviewer_tier,
            request.notes,
        )
        return result.to_dict()

    # ============================================
    # 能力
    # ============================================

    @app.get("/api/companies/{company_id}/capabilities", tags=["Capabilities"])
    async def list_capabilities(
        company_id: str,
        department: Optional[str] = None,
        status: Optional[str] = None,
    ):
        capabilities = await get_engine().list_capabilities(company_id, department, status)
        return {"capabilities": [c.to_dict() for c in capabilities]}

    @app.post(
        "/api/companies/{company_id}/departments/{department}/capabilities/{code}/activate",
        tags=["Capabilities"],
    )
    async def activate_capability(
        company_id: str,
        department: str,
        code: str,
        request: ActivateCapabilityRequest,
    ):
        capability = await get_engine().activate_capability(company_id, department, code, request.mode)
        return capability.to_dict()

    @app.post(
        "/api/companies/{company_id}/departments/{department}/capabilities/{code}/reject",
        tags=["Capabilities"],
    )
    async def reject_capability(
        company_id: str,
        department: str,
        code: str,
        request: RejectCapabilityRequest,
    ):
        capability = await get_engine().reject_capability(company_id, department, code, request.reason)
        return capability.to_dict()

    # ============================================
    # 决策 / 执行日志 / 经验
    # ============================================

    @app.get("/api/companies/{company_id}/decisions", tags=["Decisions"])
    async def list_decisions(
        company_id: str,
        department: Optional[str] = None,
        verdict: Optional[str] = None,
        cycle_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
    ):
        decisions = await get_engine().list_decisions(company_id, department, verdict, cycle_id, limit)
        return {"decisions": [d.to_dict() for d in decisions]}

    @app.get("/api/decisions/{decision_id}", tags=["Decisions"])
    async def get_decision(decision_id: str):
        decision = await get_engine().get_decision(decision_id)
        return decision.to_dict()

    @app.post("/api/companies/{company_id}/decisions/{decision_id}/outcome", tags=["Decisions"])
    async def report_outcome(company_id: str, decision_id: str, report: OutcomeReport):
        """补报效果指标，完成待定经验"""
        lesson = await get_engine().report_outcome(company_id, decision_id, report.metric_value)
        return {"lesson": lesson.to_dict() if lesson else None}

    @app.get("/api/companies/{company_id}/execution-log", tags=["Decisions"])
    async def list_execution_log(
        company_id: str,
        department: Optional[str] = None,
        cycle_id: Optional[str] = None,
        phase: Optional[str] = None,
        limit: int = Query(200, ge=1, le=2000),
    ):
        entries = await get_engine().list_execution_log(company_id, department, cycle_id, phase, limit)
        return {"entries": [e.to_dict() for e in entries]}

    @app.get("/api/companies/{company_id}/lessons", tags=["Learning"])
    async def list_lessons(
        company_id: str,
        department: Optional[str] = None,
        include_pending: bool = True,
        limit: int = Query(100, ge=1, le=1000),
    ):
        lessons = await get_engine().list_lessons(company_id, department, include_pending, limit)
        return {"lessons": [m.to_dict() for m in lessons]}

    @app.get("/api/companies/{company_id}/iq", response_model=EnterpriseIQResponse, tags=["Learning"])
    async def enterprise_iq(company_id: str):
        iq = await get_engine().enterprise_iq(company_id)
        return iq.to_dict()

    # ============================================
    # 情报与维护
    # ============================================

    @app.post("/api/companies/{company_id}/intelligence", tags=["Intelligence"])
    async def ingest_intelligence(company_id: str, request: IngestIntelligenceRequest):
        signal = await get_engine().ingest_intelligence(
            company_id,
            request.source,
            [s.model_dump() for s in request.structured_signals],
            request.payload,
            request.relevance_score,
        )
        return signal.to_dict()

    @app.post("/api/companies/{company_id}/maintenance", tags=["System"])
    async def run_maintenance(company_id: str):
        return await get_engine().run_maintenance(company_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dashboard.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=False,
    )
