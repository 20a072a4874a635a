"""
FastAPI application for the Mnemosyne REST API.

Run with:
    uvicorn mnemosyne.api.main:app --reload

Or use the CLI:
    mnemosyne serve
"""

import logging
from contextlib import asynccontextmanager
from typing import NoReturn, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from mnemosyne import __version__
from mnemosyne.agents.models import ExecutionContext
from mnemosyne.api.models import (
    AgentSummary,
    DelegateRequest,
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    IndexRequest,
    IndexResponse,
    QueryRequest,
    QueryResponse,
    ReadinessResponse,
    RetrievedChunkSchema,
    SessionResponse,
    UnlockRequest,
)
from mnemosyne.errors import (
    ConfigurationError,
    CredentialError,
    DecryptionFailed,
    InvalidCredentialsError,
    MnemosyneError,
    ProviderError,
    RetrievalError,
)
from mnemosyne.service import MnemosyneService
from mnemosyne.tracing import setup_tracing

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request or configuration"},
    401: {"model": ErrorResponse, "description": "Wrong password or rejected credentials"},
    404: {"model": ErrorResponse, "description": "Unknown agent"},
    409: {"model": ErrorResponse, "description": "Index not ready"},
    423: {"model": ErrorResponse, "description": "Session locked"},
    502: {"model": ErrorResponse, "description": "Model provider failure"},
    500: {"model": ErrorResponse, "description": "Internal error"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        - Build the service from settings (unless one was injected)
        - Load the vector store and initialize providers and agents
        - Initialize tracing if enabled

    Shutdown:
        - Lock the session (zeroes the derived key)
    """
    logger.info("Initializing Mnemosyne service...")
    if app.state.service is None:
        try:
            service = MnemosyneService.from_settings()
            await service.initialize()
        except MnemosyneError as e:
            logger.error(f"Failed to initialize service: {e.message}")
            raise RuntimeError(f"Startup failed: {e.message}") from e
        app.state.service = service

    setup_tracing()

    yield

    logger.info("Shutting down Mnemosyne...")
    app.state.service.key_manager.clear_master_password()


def create_app(service: Optional[MnemosyneService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: Pre-built service (tests); built from settings at startup if None

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Mnemosyne",
        description="Retrieval-augmented agents over a personal knowledge base",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.service = service

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


router = APIRouter()


def get_service(request: Request) -> MnemosyneService:
    return request.app.state.service


def raise_http_error(error: Exception) -> NoReturn:
    """Translate a core error into an HTTPException with an ErrorResponse body."""
    if isinstance(error, MnemosyneError):
        detail = error.to_dict()
        if isinstance(error, (DecryptionFailed, InvalidCredentialsError)):
            code = status.HTTP_401_UNAUTHORIZED
        elif isinstance(error, CredentialError):
            code = status.HTTP_423_LOCKED
        elif isinstance(error, ConfigurationError):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(error, ProviderError):
            code = status.HTTP_502_BAD_GATEWAY
        elif isinstance(error, RetrievalError):
            code = status.HTTP_409_CONFLICT
        else:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
    elif isinstance(error, ValueError):
        code = status.HTTP_400_BAD_REQUEST
        detail = {"error": "invalid_request", "message": str(error), "context": {}}
    else:
        logger.exception("Unhandled error in request")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        detail = {"error": "internal_error", "message": str(error), "context": {}}
    raise HTTPException(status_code=code, detail=detail) from error


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(request: Request) -> HealthResponse:
    """Liveness check with basic index status."""
    store = get_service(request).retriever.store
    return HealthResponse(
        status="healthy",
        version=__version__,
        index_loaded=store.is_initialized,
        index_entries=store.size,
    )


@router.get("/ready", response_model=ReadinessResponse, tags=["System"])
async def readiness(request: Request) -> ReadinessResponse:
    """Readiness of retriever, providers and agents."""
    return ReadinessResponse(**get_service(request).readiness())


@router.get("/stats", tags=["System"])
async def stats(request: Request) -> dict:
    """Statistics for the index, providers and agents."""
    return get_service(request).get_stats()


@router.get("/agents", response_model=list[AgentSummary], tags=["Agents"])
async def list_agents(request: Request) -> list[AgentSummary]:
    return [AgentSummary(**agent) for agent in get_service(request).list_agents()]


@router.post(
    "/agents/{agent_id}/execute",
    response_model=ExecuteResponse,
    responses=ERROR_RESPONSES,
    tags=["Agents"],
)
async def execute_agent(agent_id: str, body: ExecuteRequest, request: Request) -> ExecuteResponse:
    """
    Run a query through an agent.

    The agent retrieves context, calls its model (with tools if enabled)
    and returns the answer with the sources it was given.
    """
    service = get_service(request)
    if service.agents.get_agent(agent_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"Agent not found: {agent_id}", "context": {}},
        )

    context = ExecutionContext(
        note_content=body.note_content,
        note_path=body.note_path,
        additional_context=body.additional_context,
    )
    try:
        response = await service.run_agent(agent_id, body.query, context)
    except Exception as e:
        raise_http_error(e)

    data = response.to_dict()
    data.pop("success", None)
    data.pop("error", None)
    return ExecuteResponse(**data)


@router.post("/agents/delegate", response_model=ExecuteResponse, responses=ERROR_RESPONSES, tags=["Agents"])
async def delegate(body: DelegateRequest, request: Request) -> ExecuteResponse:
    """Route a query to the ready agent with the matching capability."""
    context = ExecutionContext(
        note_content=body.note_content,
        note_path=body.note_path,
        additional_context=body.additional_context,
    )
    try:
        response = await get_service(request).delegate(body.query, body.capability, context)
    except Exception as e:
        raise_http_error(e)

    data = response.to_dict()
    data.pop("success", None)
    data.pop("error", None)
    return ExecuteResponse(**data)


@router.post("/query", response_model=QueryResponse, responses=ERROR_RESPONSES, tags=["Retrieval"])
async def query_endpoint(body: QueryRequest, request: Request) -> QueryResponse:
    """Direct retrieval, bypassing agents and models."""
    try:
        results = await get_service(request).query(
            body.text,
            filters=body.filters,
            top_k=body.top_k,
            score_threshold=body.score_threshold,
            strategy=body.strategy,
        )
    except Exception as e:
        raise_http_error(e)

    return QueryResponse(
        results=[
            RetrievedChunkSchema(
                chunk_id=r.chunk_id,
                document_id=r.document_id,
                document_title=r.document_title,
                section=r.section,
                content=r.content,
                score=r.score,
                rank=r.rank,
                semantic_score=r.semantic_score,
                keyword_score=r.keyword_score,
            )
            for r in results
        ],
        count=len(results),
    )


@router.post("/session/unlock", response_model=SessionResponse, responses=ERROR_RESPONSES, tags=["Session"])
async def unlock(body: UnlockRequest, request: Request) -> SessionResponse:
    service = get_service(request)
    try:
        service.unlock(body.password)
    except Exception as e:
        raise_http_error(e)
    return SessionResponse(unlocked=service.is_unlocked)


@router.post("/session/lock", response_model=SessionResponse, tags=["Session"])
async def lock(request: Request) -> SessionResponse:
    service = get_service(request)
    service.lock()
    return SessionResponse(unlocked=service.is_unlocked)


@router.post("/index", response_model=IndexResponse, responses=ERROR_RESPONSES, tags=["Retrieval"])
async def index_vault(request: Request, body: Optional[IndexRequest] = None) -> IndexResponse:
    """Index (or re-index) the vault."""
    try:
        report = await get_service(request).ingest_vault(
            body.scope if body else None,
            incremental=body.incremental if body else False,
        )
    except Exception as e:
        raise_http_error(e)
    return IndexResponse(
        documents_processed=report.documents_processed,
        chunks_ingested=report.chunks_ingested,
        failed_chunk_ids=report.failed_chunk_ids,
        skipped_documents=report.skipped_documents,
        unreadable_documents=report.unreadable_documents,
        unchanged_documents=report.unchanged_documents,
        removed_documents=report.removed_documents,
        duration_ms=report.duration_ms,
        success=report.success,
    )


# Create app instance
app = create_app()
