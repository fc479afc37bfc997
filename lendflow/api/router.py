"""
API router - aggregates the admin and health route modules.
"""
from fastapi import APIRouter
from lendflow.api.workflow_rules import router as workflow_rules_router
from lendflow.api.webhook_subscriptions import router as webhook_subscriptions_router
from lendflow.api.outbound_events import router as outbound_events_router
from lendflow.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(workflow_rules_router)
api_router.include_router(webhook_subscriptions_router)
api_router.include_router(outbound_events_router)
api_router.include_router(health_router)
