"""Workflow REST API.

All routes are mounted under `/api`. Handlers stay thin: every decision is
made by the state machine, the store or the rules engine.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request, status

from workflow_governor import __version__
from workflow_governor.core.governor import SessionExistsError, WorkflowGovernor
from workflow_governor.persistence.base import (
    SessionSummary,
    SnapshotInfo,
    StoreStatistics,
    VersionInfo,
)
from workflow_governor.rules.engine import WorkflowRulesEngine
from workflow_governor.rules.models import (
    AnyRule,
    FailureRecoveryRule,
    RuleEngineStatistics,
    SchemaValidationRule,
)
from workflow_governor.server.config import ServerSettings
from workflow_governor.server.models import (
    CreateWorkflowRequest,
    RuleEnabledRequest,
    RuleSummary,
    SnapshotRequest,
    TransitionBody,
    TransitionResponse,
    VersionRequest,
)
from workflow_governor.workflow.models import (
    InvalidIdentifierError,
    Priority,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
)
from workflow_governor.workflow.state_machine import WorkflowStateMachine

router = APIRouter()


def _settings(request: Request) -> ServerSettings:
    settings = getattr(request.app.state, "settings", None)
    if not isinstance(settings, ServerSettings):
        raise HTTPException(status_code=500, detail="Server settings not configured")
    return settings


def _governor(request: Request) -> WorkflowGovernor:
    governor = getattr(request.app.state, "governor", None)
    if not isinstance(governor, WorkflowGovernor):
        raise HTTPException(status_code=500, detail="Workflow governor not configured")
    return governor


def _machine(request: Request, session_id: str) -> WorkflowStateMachine:
    try:
        machine = _governor(request).find_workflow(session_id)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if machine is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return machine


def _rule_summary(rule: AnyRule) -> RuleSummary:
    if isinstance(rule, SchemaValidationRule):
        kind = "schema"
    elif isinstance(rule, FailureRecoveryRule):
        kind = "recovery"
    else:
        kind = "standard"
    return RuleSummary(
        id=rule.id,
        name=rule.name,
        kind=kind,
        priority=rule.priority,
        enabled=rule.enabled,
        category=rule.category,
        description=rule.description,
        tags=sorted(rule.tags),
    )


def _engine(request: Request) -> WorkflowRulesEngine:
    return _governor(request).engine


@router.get("/health")
def health(request: Request) -> dict[str, str]:
    governor = _governor(request)
    return {
        "status": "ok",
        "version": __version__,
        "storage": str(governor.config.state.storage_path),
    }


@router.get("/workflows", response_model=list[SessionSummary])
def list_workflows(
    request: Request,
    state: WorkflowState | None = Query(default=None),
    priority: Priority | None = Query(default=None),
    category: str | None = Query(default=None),
    tag: str | None = Query(default=None),
) -> list[SessionSummary]:
    return _governor(request).store.find_sessions(
        state=state, priority=priority, category=category, tag=tag
    )


@router.post(
    "/workflows", response_model=WorkflowContext, status_code=status.HTTP_201_CREATED
)
def create_workflow(req: CreateWorkflowRequest, request: Request) -> WorkflowContext:
    try:
        machine = _governor(request).start_workflow(
            req.task_description,
            session_id=req.session_id,
            priority=req.priority,
            category=req.category,
            tags=req.tags,
            automation_level=req.automation_level,
            assignee=req.assignee,
            actor=req.actor or _settings(request).default_actor,
        )
    except SessionExistsError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return machine.context


@router.get("/workflows/{session_id}", response_model=WorkflowContext)
def get_workflow(session_id: str, request: Request) -> WorkflowContext:
    return _machine(request, session_id).context


@router.delete("/workflows/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow(session_id: str, request: Request) -> None:
    governor = _governor(request)
    try:
        deleted = governor.delete_workflow(session_id)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if not deleted:
        raise HTTPException(status_code=404, detail="Workflow not found")


@router.get("/workflows/{session_id}/actions", response_model=list[WorkflowAction])
def available_actions(session_id: str, request: Request) -> list[WorkflowAction]:
    return _machine(request, session_id).get_available_actions()


@router.post("/workflows/{session_id}/transitions", response_model=TransitionResponse)
def transition(session_id: str, req: TransitionBody, request: Request) -> TransitionResponse:
    machine = _machine(request, session_id)
    source = machine.current_state
    ok = machine.transition(
        req.action,
        actor=req.actor or _settings(request).default_actor,
        metadata=req.metadata,
    )
    if not ok:
        raise HTTPException(
            status_code=409,
            detail=f"{req.action.value} is not allowed from {source.value}",
        )
    return TransitionResponse(
        session_id=session_id,
        action=req.action,
        from_state=source,
        current_state=machine.current_state,
        rules_executed=[r.rule_id for r in machine.last_rule_results if r.action_executed],
    )


@router.get("/workflows/{session_id}/snapshots", response_model=list[SnapshotInfo])
def list_snapshots(session_id: str, request: Request) -> list[SnapshotInfo]:
    return _machine(request, session_id).list_snapshots()


@router.post(
    "/workflows/{session_id}/snapshots",
    response_model=dict[str, str],
    status_code=status.HTTP_201_CREATED,
)
def create_snapshot(session_id: str, req: SnapshotRequest, request: Request) -> dict[str, str]:
    snapshot_id = _machine(request, session_id).create_snapshot(req.description)
    if snapshot_id is None:
        raise HTTPException(status_code=500, detail="Snapshot could not be written")
    return {"snapshot_id": snapshot_id}


@router.post(
    "/workflows/{session_id}/snapshots/{snapshot_id}/restore", response_model=WorkflowContext
)
def restore_snapshot(session_id: str, snapshot_id: str, request: Request) -> WorkflowContext:
    machine = _machine(request, session_id)
    if not machine.restore_from_snapshot(snapshot_id):
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return machine.context


@router.get("/workflows/{session_id}/versions", response_model=list[VersionInfo])
def list_versions(session_id: str, request: Request) -> list[VersionInfo]:
    return _machine(request, session_id).list_versions()


@router.post(
    "/workflows/{session_id}/versions",
    response_model=VersionInfo,
    status_code=status.HTTP_201_CREATED,
)
def create_version(session_id: str, req: VersionRequest, request: Request) -> VersionInfo:
    machine = _machine(request, session_id)
    try:
        return machine.save_version(req.label)
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post("/workflows/{session_id}/versions/{label}/restore", response_model=WorkflowContext)
def restore_version(session_id: str, label: str, request: Request) -> WorkflowContext:
    machine = _machine(request, session_id)
    if not machine.restore_version(label):
        raise HTTPException(status_code=404, detail="Version not found")
    return machine.context


@router.get("/statistics", response_model=StoreStatistics)
def statistics(
    request: Request,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
) -> StoreStatistics:
    return _governor(request).store.get_statistics(since=since, until=until)


@router.get("/rules", response_model=list[RuleSummary])
def list_rules(request: Request) -> list[RuleSummary]:
    rules = sorted(_engine(request).rules, key=lambda r: r.priority, reverse=True)
    return [_rule_summary(rule) for rule in rules]


@router.get("/rules/statistics", response_model=RuleEngineStatistics)
def rule_statistics(request: Request) -> RuleEngineStatistics:
    return _engine(request).statistics()


@router.put("/rules/{rule_id}/enabled", response_model=RuleSummary)
def set_rule_enabled(rule_id: str, req: RuleEnabledRequest, request: Request) -> RuleSummary:
    engine = _engine(request)
    rule = engine.get_rule(rule_id)
    if rule is None or not engine.set_rule_enabled(rule_id, req.enabled):
        raise HTTPException(status_code=404, detail="Rule not found")
    return _rule_summary(rule)
