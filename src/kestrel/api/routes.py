from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from kestrel.api.deps import get_db, get_run_orchestrator
from kestrel.api.schemas import (
    AutomationStartRequest,
    AutomationStatusResponse,
    JobResponse,
    JobStatusRequest,
    JobStepResponse,
    LabelFeedbackRequest,
    LabelMappingResponse,
    LeadResponse,
    LearningResetRequest,
    MapLabelsRequest,
    PreferenceRequest,
    RejectionPatternResponse,
    RunRecordResponse,
    WeightAdjustmentResponse,
)
from kestrel.core.errors import InvalidBatchConfig, NoActiveRun, OrchestrationConflict, RunNotFound
from kestrel.core.jobs import JobLifecycleManager, serialize_job
from kestrel.core.label_mapping import LabelMappingLearner
from kestrel.core.orchestrator import RunOrchestrator, serialize_run
from kestrel.core.runtime import get_learning_queue, rejection_hook
from kestrel.core.weights import WeightManager
from kestrel.db.repositories import Repository
from kestrel.llm.router import LLMRouter
from kestrel.types import FieldMapping, JobStatus

router = APIRouter(prefix="/api", tags=["api"])


# automation


@router.post("/automation/start", response_model=AutomationStatusResponse)
def start_automation(
    payload: AutomationStartRequest,
    orchestrator: RunOrchestrator = Depends(get_run_orchestrator),
) -> AutomationStatusResponse:
    try:
        data = orchestrator.start(payload.operation, payload.config, resume_run_id=payload.resume_run_id)
    except InvalidBatchConfig as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except OrchestrationConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return AutomationStatusResponse.model_validate(data)


@router.post("/automation/stop", response_model=AutomationStatusResponse)
def stop_automation(orchestrator: RunOrchestrator = Depends(get_run_orchestrator)) -> AutomationStatusResponse:
    try:
        data = orchestrator.stop(reason="stop requested via API")
    except NoActiveRun as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return AutomationStatusResponse.model_validate(data)


@router.get("/automation/status", response_model=AutomationStatusResponse)
def automation_status(orchestrator: RunOrchestrator = Depends(get_run_orchestrator)) -> AutomationStatusResponse:
    return AutomationStatusResponse.model_validate(orchestrator.status())


@router.post("/automation/reconcile/{run_id}", response_model=RunRecordResponse)
def reconcile_run(run_id: int, orchestrator: RunOrchestrator = Depends(get_run_orchestrator)) -> RunRecordResponse:
    try:
        return RunRecordResponse.model_validate(orchestrator.reconcile(run_id))
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except OrchestrationConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.websocket("/automation/stream")
async def stream_automation(websocket: WebSocket) -> None:
    await websocket.accept()
    orchestrator = get_run_orchestrator()
    subscription = orchestrator.subscribe()
    try:
        await websocket.send_json({"type": "status", **(await asyncio.to_thread(orchestrator.status))})
        while True:
            event = await asyncio.to_thread(subscription.get, 1.0)
            if event is not None:
                await websocket.send_json(event)
    except WebSocketDisconnect:
        return
    finally:
        subscription.close()


# jobs


@router.get("/jobs", response_model=list[JobResponse])
def list_jobs(
    status: JobStatus | None = None,
    easy_apply: bool | None = None,
    search: str | None = None,
    curated: bool | None = None,
    include_skipped: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[JobResponse]:
    rows = Repository(db).list_jobs(
        status=status,
        easy_apply=easy_apply,
        search=search,
        curated=curated,
        include_skipped=include_skipped,
        limit=limit,
        offset=offset,
    )
    return [JobResponse.model_validate(serialize_job(row)) for row in rows]


@router.get("/jobs/stats")
def job_stats(db: Session = Depends(get_db)) -> dict:
    repo = Repository(db)
    return {"statuses": repo.job_stats(), "applied_methods": repo.applied_method_stats()}


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)) -> JobResponse:
    job = Repository(db).get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.model_validate(serialize_job(job))


@router.post("/jobs/{job_id}/status", response_model=JobResponse)
def update_job_status(job_id: str, payload: JobStatusRequest, db: Session = Depends(get_db)) -> JobResponse:
    manager = JobLifecycleManager(db, on_rejection=rejection_hook())
    try:
        job = manager.update_status(
            job_id,
            payload.status,
            applied_method=payload.applied_method,
            rejection_reason=payload.rejection_reason,
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JobResponse.model_validate(serialize_job(job))


@router.post("/jobs/{job_id}/curate", response_model=JobResponse)
def toggle_curated(job_id: str, db: Session = Depends(get_db)) -> JobResponse:
    try:
        job = Repository(db).toggle_curated(job_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JobResponse.model_validate(serialize_job(job))


@router.get("/jobs/{job_id}/steps", response_model=list[JobStepResponse])
def job_steps(job_id: str, db: Session = Depends(get_db)) -> list[JobStepResponse]:
    repo = Repository(db)
    if repo.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return [JobStepResponse.model_validate(row) for row in repo.list_steps(job_id)]


# leads


@router.get("/leads", response_model=list[LeadResponse])
def list_leads(
    search: str | None = None,
    title: str | None = None,
    company: str | None = None,
    profile: str | None = None,
    include_deleted: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[LeadResponse]:
    rows = Repository(db).list_leads(
        search=search,
        title=title,
        company=company,
        profile=profile,
        include_deleted=include_deleted,
        limit=limit,
        offset=offset,
    )
    return [LeadResponse.model_validate(row) for row in rows]


@router.get("/leads/stats")
def lead_stats(db: Session = Depends(get_db)) -> dict[str, int]:
    return Repository(db).lead_stats()


@router.delete("/leads/{lead_id}", response_model=LeadResponse)
def delete_lead(lead_id: str, db: Session = Depends(get_db)) -> LeadResponse:
    try:
        return LeadResponse.model_validate(Repository(db).soft_delete_lead(lead_id))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# runs


@router.get("/runs", response_model=list[RunRecordResponse])
def list_runs(
    operation: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[RunRecordResponse]:
    rows = Repository(db).list_run_records(operation=operation, limit=limit)
    return [RunRecordResponse.model_validate(serialize_run(row)) for row in rows]


@router.get("/runs/{run_id}", response_model=RunRecordResponse)
def get_run(run_id: int, db: Session = Depends(get_db)) -> RunRecordResponse:
    record = Repository(db).get_run_record(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunRecordResponse.model_validate(serialize_run(record))


# learning


@router.get("/learning/patterns", response_model=list[RejectionPatternResponse])
def rejection_patterns(pattern_type: str | None = None, db: Session = Depends(get_db)) -> list[RejectionPatternResponse]:
    rows = Repository(db).list_rejection_patterns(pattern_type)
    return [RejectionPatternResponse.model_validate(row) for row in rows]


@router.get("/learning/adjustments", response_model=list[WeightAdjustmentResponse])
def weight_adjustments(
    limit: int = Query(default=20, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[WeightAdjustmentResponse]:
    rows = Repository(db).weight_adjustment_history(limit=limit)
    return [WeightAdjustmentResponse.model_validate(row) for row in rows]


@router.get("/learning/weights")
def learned_weights(profile: str | None = None, db: Session = Depends(get_db)) -> dict:
    manager = WeightManager(db)
    return {**manager.summary(profile), "stats": manager.learning_stats()}


@router.post("/learning/reset")
def reset_learning(payload: LearningResetRequest, db: Session = Depends(get_db)) -> dict[str, int]:
    result = {"adjustments_removed": WeightManager(db).reset()}
    if payload.include_patterns:
        result["patterns_removed"] = Repository(db).clear_rejection_patterns()
    return result


@router.get("/learning/queue")
def learning_queue_stats() -> dict:
    return get_learning_queue().stats()


# label mappings


@router.get("/label-mappings", response_model=list[LabelMappingResponse])
def list_label_mappings(db: Session = Depends(get_db)) -> list[LabelMappingResponse]:
    return [LabelMappingResponse.model_validate(row.as_dict()) for row in LabelMappingLearner(db).all_mappings()]


@router.post("/label-mappings/map", response_model=list[FieldMapping])
def map_labels(payload: MapLabelsRequest, db: Session = Depends(get_db)) -> list[FieldMapping]:
    return LabelMappingLearner(db, mapper=LLMRouter()).map_labels(payload.labels)


@router.post("/label-mappings/feedback", response_model=LabelMappingResponse)
def label_feedback(payload: LabelFeedbackRequest, db: Session = Depends(get_db)) -> LabelMappingResponse:
    learner = LabelMappingLearner(db)
    if payload.success:
        mapping = learner.record_success(payload.label, payload.locator)
    else:
        mapping = learner.record_failure(payload.label)
    if mapping is None:
        raise HTTPException(status_code=404, detail="Label mapping not found")
    return LabelMappingResponse.model_validate(mapping.as_dict())


@router.delete("/label-mappings")
def clear_label_mappings(db: Session = Depends(get_db)) -> dict[str, int]:
    return {"removed": LabelMappingLearner(db).clear()}


# preferences


@router.get("/preferences")
def list_preferences(db: Session = Depends(get_db)) -> dict[str, str]:
    return Repository(db).all_preferences()


@router.get("/preferences/{key}")
def get_preference(key: str, db: Session = Depends(get_db)) -> dict[str, str]:
    value = Repository(db).get_preference(key)
    if value is None:
        raise HTTPException(status_code=404, detail="Preference not found")
    return {"key": key, "value": value}


@router.put("/preferences/{key}")
def set_preference(key: str, payload: PreferenceRequest, db: Session = Depends(get_db)) -> dict[str, str]:
    Repository(db).set_preference(key, payload.value)
    return {"key": key, "value": payload.value}


@router.delete("/preferences/{key}")
def delete_preference(key: str, db: Session = Depends(get_db)) -> dict[str, bool]:
    if not Repository(db).delete_preference(key):
        raise HTTPException(status_code=404, detail="Preference not found")
    return {"deleted": True}
