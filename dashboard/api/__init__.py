# Enterprise Autopilot - Dashboard API
"""
FastAPI 后端

核心端点:
- /api/companies/{company_id}/departments: 部门与周期
- /api/approvals: 审批处理
- /api/companies/{company_id}/capabilities: 能力生命周期
- /api/companies/{company_id}/iq: 企业智商
"""
