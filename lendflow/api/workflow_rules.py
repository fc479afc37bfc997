"""
Workflow rule admin endpoints - create, list and update tenant trigger rules.
Rules are retired with PATCH {"is_active": false}; there is no delete.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from lendflow.api.tenant_auth import get_tenant_id, require_admin_key
from lendflow.database import get_db
from lendflow.models.workflow_rule import WorkflowRule
from lendflow.schemas.workflow import (
    WorkflowRuleCreate,
    WorkflowRuleResponse,
    WorkflowRuleUpdate,
)
from lendflow.services import rule_engine

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/v1/workflow-rules",
    tags=["workflow"],
    dependencies=[Depends(require_admin_key)],
)


def _serialize_rule(rule: WorkflowRule) -> WorkflowRuleResponse:
    return WorkflowRuleResponse(
        id=str(rule.id),
        trigger_type=rule.trigger_type,
        trigger_config=rule.trigger_config or {},
        action_config=rule.action_config or {},
        is_active=rule.is_active,
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


@router.post("", response_model=WorkflowRuleResponse, status_code=201)
async def create_workflow_rule(
    payload: WorkflowRuleCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    try:
        rule = await rule_engine.create_rule(
            db,
            tenant_id,
            trigger_type=payload.trigger_type,
            trigger_config=payload.trigger_config,
            action_config=payload.action_config,
            is_active=payload.is_active,
        )
    except rule_engine.InvalidTriggerError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _serialize_rule(rule)


@router.get("", response_model=list[WorkflowRuleResponse])
async def list_workflow_rules(
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    rules = await rule_engine.list_rules(db, tenant_id)
    return [_serialize_rule(rule) for rule in rules]


@router.patch("/{rule_id}", response_model=WorkflowRuleResponse)
async def update_workflow_rule(
    rule_id: str,
    payload: WorkflowRuleUpdate,
    db: AsyncSession = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
):
    try:
        rule = await rule_engine.update_rule(
            db,
            tenant_id,
            rule_id,
            **payload.model_dump(exclude_unset=True),
        )
    except rule_engine.RuleNotFoundError:
        raise HTTPException(status_code=404, detail="Workflow rule not found")
    except rule_engine.InvalidTriggerError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _serialize_rule(rule)
