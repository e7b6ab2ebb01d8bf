"""
API 路由聚合模块

路由模块说明：
- auth: 登录后会话回调、登出
- members: 认领、有效等级、权益概览
- webhooks: Square 支付事件
- admin: 等级设置、临时覆盖、权益授予/撤销、审计查询
- payments: 支付成功页校验
- internal: 请求路由层的工具访问探针与跳转
- cron: 定时对账触发
- utils: 健康检查
"""
from fastapi import APIRouter

from tiergate.api.routes import (
    admin,
    auth,
    cron,
    internal,
    members,
    payments,
    utils,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(auth.router)  # /auth/*
api_router.include_router(members.router)  # /members/*
api_router.include_router(webhooks.router)  # /webhooks/*
api_router.include_router(admin.router)  # /admin/*
api_router.include_router(payments.router)  # /payments/*
api_router.include_router(internal.router)  # /internal/*
api_router.include_router(cron.router)  # /cron/*
api_router.include_router(utils.router)  # /utils/*
