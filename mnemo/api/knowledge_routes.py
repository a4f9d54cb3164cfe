"""
Knowledge API

Endpoints:
  POST   /api/v1/knowledge/utterances          - Feed one utterance through the pipeline
  GET    /api/v1/knowledge/cache/performance   - Cache statistics
  GET    /api/v1/knowledge/cache/items         - Cache items (optionally one category)
  POST   /api/v1/knowledge/cache/profile       - Pin a user-profile fact (409 when the category is full)
  GET    /api/v1/knowledge/conversation        - Current conversation context
  GET    /api/v1/knowledge/focus               - Focus summary lines
  GET    /api/v1/knowledge/personal-info       - Context bundle for generation
  GET    /api/v1/knowledge/events/search       - Vector search over events (503 when the query cannot be embedded)
  GET    /api/v1/knowledge/graph/integrity     - Orphans, duplicate edges, invalid references
  DELETE /api/v1/knowledge/graph/orphans       - Delete orphaned nodes (needs confirm=true)
  GET    /api/v1/knowledge/clusters            - Cluster nodes
  GET    /api/v1/knowledge/clusters/quality    - Clustering quality metrics
  POST   /api/v1/knowledge/jobs/{operation}    - Start a long operation (clustering, embeddings, import,
                                               history ingestion) in the background
  GET    /api/v1/knowledge/jobs                - List jobs
  GET    /api/v1/knowledge/jobs/{job_id}       - Job status, progress and result
  DELETE /api/v1/knowledge/jobs/{job_id}       - Cancel a job
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from config import thresholds
from mnemo.cache.cache_models import CacheCategory
from mnemo.core.context import KnowledgeContext
from mnemo.core.errors import CapacityExhausted, EmbeddingUnavailable

router = APIRouter(prefix="/api/v1/knowledge", tags=["Knowledge"])


def get_context(request: Request) -> KnowledgeContext:
    ctx = getattr(request.app.state, "knowledge", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="knowledge context not initialized")
    return ctx


# ===== Models =====


class UtteranceRequest(BaseModel):
    text: str = Field(..., min_length=1)
    participants: list[str] = Field(default_factory=list)
    context_id: Optional[str] = None
    ingest: bool = False


class ProfileFactRequest(BaseModel):
    key: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    topics: list[str] = Field(default_factory=list)


class PastUtterance(BaseModel):
    text: str = Field(..., min_length=1)
    time: Optional[datetime] = None


class JobRequest(BaseModel):
    """Options for background operations; unused fields are ignored."""
    force: bool = False
    force_recluster: bool = False
    use_two_stage: bool = True
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    document: Optional[dict[str, Any]] = None
    generate_embeddings: bool = True
    utterances: list[PastUtterance] = Field(default_factory=list)
    context_id: Optional[str] = None
    priority: int = Field(2, ge=1, le=3)


# ===== Query surface =====


@router.post("/utterances")
def process_utterance(body: UtteranceRequest, ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.service.process_utterance(
        body.text, participants=body.participants, context_id=body.context_id, ingest=body.ingest,
    )


@router.get("/cache/performance")
def cache_performance(ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.service.get_cache_performance()


@router.get("/cache/items")
def cache_items(category: Optional[CacheCategory] = None,
                ctx: KnowledgeContext = Depends(get_context)) -> list[dict[str, Any]]:
    if category is None:
        items = ctx.service.get_all_cache_items()
    else:
        items = ctx.service.get_cache_items_by_category(category)
    return [i.public_dict() for i in items]


@router.post("/cache/profile")
def pin_profile_fact(body: ProfileFactRequest, ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    try:
        evicted = ctx.service.remember_profile_fact(body.key, body.text, body.topics)
    except CapacityExhausted as e:
        raise HTTPException(status_code=409, detail=e.to_dict()) from e
    return {"stored": body.key, "evicted": evicted.key if evicted else None}


@router.get("/conversation")
def conversation_context(ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.service.get_current_conversation_context().model_dump(mode="json")


@router.get("/focus")
def focus_summary(ctx: KnowledgeContext = Depends(get_context)) -> list[str]:
    return ctx.service.get_current_personal_focus_summary()


@router.get("/personal-info")
def personal_info(ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.service.get_relevant_personal_info_for_generation()


@router.get("/events/search")
def search_events(
    q: str = Query(..., min_length=1),
    top_k: int = Query(thresholds.SEARCH_TOP_K, ge=1, le=100),
    threshold: float = Query(thresholds.SEARCH_MIN_SIMILARITY, ge=-1.0, le=1.0),
    ctx: KnowledgeContext = Depends(get_context),
) -> list[dict[str, Any]]:
    try:
        return ctx.service.search_events_by_text(q, top_k=top_k, threshold=threshold)
    except EmbeddingUnavailable as e:
        raise HTTPException(status_code=503, detail=e.to_dict()) from e


@router.get("/graph/integrity")
def graph_integrity(ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.service.validate_graph_integrity()


@router.delete("/graph/orphans")
def delete_orphans(confirm: bool = False, ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    if not confirm:
        analysis = ctx.store.analyze_orphaned_entities()
        raise HTTPException(status_code=400, detail={
            "message": "pass confirm=true to delete orphaned nodes",
            "analysis": analysis,
        })
    return {"deleted": ctx.store.delete_orphaned_nodes()}


@router.get("/clusters")
def clusters(include_provisional: bool = False,
             ctx: KnowledgeContext = Depends(get_context)) -> list[dict[str, Any]]:
    return [c.public_dict() for c in ctx.engine.get_all_clusters(include_provisional=include_provisional)]


@router.get("/clusters/quality")
def clustering_quality(ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.service.get_clustering_quality_metrics()


# ===== Background jobs =====

JOB_OPERATIONS = (
    "cluster_init_all",
    "organize_graph",
    "cluster_by_date_range",
    "detect_outliers",
    "clear_clusters",
    "generate_embeddings",
    "import",
    "ingest_history",
)


def _job_operation(name: str, body: JobRequest, ctx: KnowledgeContext):
    if name == "cluster_init_all":
        return lambda progress, cancel: ctx.engine.cluster_init_all(progress=progress, cancel=cancel)
    if name == "organize_graph":
        return lambda progress, cancel: ctx.engine.organize_graph(
            force_recluster=body.force_recluster, use_two_stage=body.use_two_stage,
            progress=progress, cancel=cancel)
    if name == "cluster_by_date_range":
        if body.start is None or body.end is None:
            raise HTTPException(status_code=422, detail="start and end are required")
        return lambda progress, cancel: ctx.engine.cluster_by_date_range(
            body.start, body.end, progress=progress, cancel=cancel)
    if name == "detect_outliers":
        return lambda progress, cancel: ctx.engine.detect_and_reassign_outliers(progress=progress, cancel=cancel)
    if name == "clear_clusters":
        return lambda progress, cancel: ctx.engine.clear_all_clusters(progress=progress)
    if name == "generate_embeddings":
        return lambda progress, cancel: ctx.index.generate_for_all(force=body.force, progress=progress,
                                                                  cancel=cancel)
    if name == "ingest_history":
        if not body.utterances:
            raise HTTPException(status_code=422, detail="utterances are required")
        items = [(u.text, u.time) for u in body.utterances]
        return lambda progress, cancel: ctx.ingestor.ingest_batch(
            items, context_id=body.context_id, progress=progress, cancel=cancel)
    if body.document is None:
        raise HTTPException(status_code=422, detail="document is required")
    return lambda progress, cancel: ctx.importer.import_document(
        body.document, generate_embeddings=body.generate_embeddings,
        progress=progress, cancel=cancel).to_dict()


@router.post("/jobs/{operation}", status_code=202)
def start_job(operation: str, body: Optional[JobRequest] = None,
              ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    if operation not in JOB_OPERATIONS:
        raise HTTPException(status_code=404, detail=f"unknown operation '{operation}'")
    body = body or JobRequest()
    job_id = ctx.jobs.submit(operation, _job_operation(operation, body, ctx), priority=body.priority)
    return {"job_id": job_id, "status": "queued"}


@router.get("/jobs")
def list_jobs(ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    return {
        "stats": ctx.jobs.get_stats(),
        "jobs": [j.to_dict(include_result=False) for j in ctx.jobs.list_jobs()],
    }


@router.get("/jobs/{job_id}")
def get_job(job_id: str, ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    job = ctx.jobs.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return job.to_dict()


@router.delete("/jobs/{job_id}")
def cancel_job(job_id: str, ctx: KnowledgeContext = Depends(get_context)) -> dict[str, Any]:
    if not ctx.jobs.cancel(job_id):
        raise HTTPException(status_code=409, detail="job is unknown or already finished")
    return {"job_id": job_id, "cancel_requested": True}
