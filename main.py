"""
Influence Graph API Service

FastAPI wrapper around the influence scoring engine.
Connects to FalkorDB for persistent storage when FALKORDB_HOST is set,
otherwise keeps the graph in memory.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from influence_graph.cache.cache import ResultCache
from influence_graph.config import EngineConfig
from influence_graph.core.errors import (
    ComputationTimeout, ErrorCode, InfluenceError, InvalidInput, NotFound, StorageFailure,
)
from influence_graph.interface.service import InfluenceService
from influence_graph.notify.channel import HttpBroadcastChannel, MemoryChannel
from influence_graph.orchestrator.recompute import RecomputeOrchestrator
from influence_graph.store.memory_store import InMemoryGraphStore


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("influence_graph.api")


# ============================================================
# Global State
# ============================================================

config: EngineConfig = None
store = None
cache: ResultCache = None
channel = None
service: InfluenceService = None


def _open_store(cfg: EngineConfig):
    if cfg.falkordb_host:
        from influence_graph.store.falkordb_store import FalkorGraphStore
        try:
            s = FalkorGraphStore(host=cfg.falkordb_host, port=cfg.falkordb_port,
                                 password=cfg.falkordb_password,
                                 graph_name=cfg.falkordb_graph)
            return s, f"FalkorDB ({cfg.falkordb_host}:{cfg.falkordb_port}/{cfg.falkordb_graph})"
        except StorageFailure as e:
            logger.error("FalkorDB connection failed: %s, falling back to in-memory", e)
            return InMemoryGraphStore(), "In-Memory (FalkorDB failed)"
    return InMemoryGraphStore(), "In-Memory"


def _mount_mcp(app: FastAPI):
    from mcp.server.sse import SseServerTransport
    from starlette.routing import Route
    from influence_graph.mcp.server import create_mcp_server

    mcp_server = create_mcp_server(lambda: service)
    sse = SseServerTransport("/mcp/messages/")

    async def handle_sse(request):
        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1], mcp_server.create_initialization_options()
            )

    async def handle_messages(request):
        await sse.handle_post_message(request.scope, request.receive, request._send)

    app.routes.append(Route("/mcp/sse", endpoint=handle_sse))
    app.routes.append(Route("/mcp/messages/", endpoint=handle_messages, methods=["POST"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire store, cache, channel and service; stop the cache sweeper on shutdown."""
    global config, store, cache, channel, service

    config = EngineConfig.from_env()
    store, backend_name = _open_store(config)
    cache = ResultCache(default_ttl_ms=config.cache_ttl_ms,
                        sweep_interval_s=config.sweep_interval_s, start=True)
    if config.broadcast_url:
        channel = HttpBroadcastChannel(config.broadcast_url)
    else:
        channel = MemoryChannel()
    orchestrator = RecomputeOrchestrator(store, cache, channel, config)
    service = InfluenceService(store, cache, orchestrator, channel, config)

    if config.enable_mcp:
        _mount_mcp(app)
        logger.info("MCP: enabled at /mcp/sse")

    logger.info("Influence Graph booted. Backend: %s", backend_name)
    yield
    cache.close()
    channel.close()
    logger.info("Influence Graph shutting down")


app = FastAPI(
    title="Influence Graph",
    description="Time-decayed, propagated influence scores over an organizational graph",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InfluenceError)
async def influence_error_handler(request: Request, exc: InfluenceError):
    if isinstance(exc, InvalidInput):
        status = 409 if exc.code == ErrorCode.E_DUPLICATE else 400
    elif isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, StorageFailure):
        status = 503
    elif isinstance(exc, ComputationTimeout):
        logger.error("Propagation budget exhausted: %s", exc.message)
        status = 500
    else:
        status = 500
    return JSONResponse(status_code=status, content=exc.to_dict())


# ============================================================
# Request/Response Models
# ============================================================

class NodeCreate(BaseModel):
    organization_id: str = Field(alias="organizationId")
    id: str
    name: str
    group_id: Optional[str] = Field(default=None, alias="groupId")
    group_name: Optional[str] = Field(default=None, alias="groupName")

class EdgeCreate(BaseModel):
    organization_id: str = Field(alias="organizationId")
    source_id: str = Field(alias="sourceId")
    target_id: str = Field(alias="targetId")
    weight: float
    context: Optional[str] = None
    context_type: Optional[str] = Field(default=None, alias="contextType")

class EdgeUpdate(BaseModel):
    id: str
    weight: Optional[float] = None
    context: Optional[str] = None
    context_type: Optional[str] = Field(default=None, alias="contextType")
    active: Optional[bool] = None

class EventCreate(BaseModel):
    organization_id: str = Field(alias="organizationId")
    subject_node_id: str = Field(alias="subjectNodeId")
    event_type: str = Field(alias="eventType")
    weight_delta: Optional[float] = Field(default=None, alias="weightDelta")
    impact_score: float = Field(default=1.0, alias="impactScore")

class RecalculateRequest(BaseModel):
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    apply_decay: bool = Field(default=True, alias="applyDecay")
    process_events: bool = Field(default=True, alias="processEvents")


def _require_org(organization_id: Optional[str]) -> str:
    if not organization_id:
        raise HTTPException(400, "Organization ID is required")
    return organization_id


# ============================================================
# Health
# ============================================================

@app.get("/")
async def root():
    return {
        "service": "Influence Graph",
        "version": app.version,
        "backend": type(store).__name__ if store is not None else None,
        "mcp": bool(config and config.enable_mcp),
    }

@app.get("/health")
async def health():
    return {"status": "ok", "cache": service.cache_stats() if service else None}

@app.get("/cache/stats")
async def cache_stats():
    return service.cache_stats()


# ============================================================
# Graph Endpoints
# ============================================================

@app.get("/influence")
def get_influence(organizationId: Optional[str] = None, propagation: bool = False,
                  communities: bool = False):
    tenant = _require_org(organizationId)
    return service.compute_graph_view(tenant, propagation, communities)

@app.get("/influence/nodes/{node_id}")
def get_node_detail(node_id: str, organizationId: Optional[str] = None):
    tenant = _require_org(organizationId)
    return service.node_detail(tenant, node_id)

@app.post("/nodes", status_code=201)
def create_node(req: NodeCreate):
    return service.add_node(req.organization_id, req.id, req.name,
                            req.group_id, req.group_name)

@app.post("/influence", status_code=201)
def create_edge(req: EdgeCreate):
    return service.create_edge(req.organization_id, req.source_id, req.target_id,
                               req.weight, req.context, req.context_type)

@app.put("/influence")
def update_edge(req: EdgeUpdate):
    return service.update_edge(req.id, req.weight, req.context, req.context_type, req.active)

@app.delete("/influence")
def delete_edge(id: Optional[str] = None):
    if not id:
        raise HTTPException(400, "Edge ID is required")
    return service.delete_edge(id)


# ============================================================
# Scores
# ============================================================

@app.post("/influence/events", status_code=201)
def record_event(req: EventCreate):
    return service.record_event(req.organization_id, req.subject_node_id, req.event_type,
                                req.weight_delta, req.impact_score)

@app.post("/influence/recalculate")
def recalculate(req: RecalculateRequest):
    tenant = _require_org(req.organization_id)
    return service.recompute(tenant, req.apply_decay, req.process_events)

@app.get("/influence/recalculate")
def recalculate_status(organizationId: Optional[str] = None):
    tenant = _require_org(organizationId)
    return service.recompute_status(tenant)


# ============================================================
# Analytics
# ============================================================

@app.get("/analytics")
def analytics(organizationId: Optional[str] = None, type: str = "overview",
              limit: int = 10, metric: str = "total"):
    tenant = _require_org(organizationId)
    return service.compute_analytics(tenant, type, limit, metric)


# ============================================================
# Run
# ============================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8080))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=False)
