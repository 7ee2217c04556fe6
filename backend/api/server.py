# api/server.py
# ============================================================================
# CREATOR BUNDLES BACKEND — FASTAPI SERVER
# ============================================================================
# Stripe webhook, purchase verification, bundle content and bundle jobs
# ============================================================================

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from app_context import AppContext
from config import Settings
from errors import BadRequestError, PipelineError, WebhookSignatureError
from logging_config import configure_logging
from schemas.models import (
    AddContentRequest,
    BundleDraft,
    BundleJobRequest,
    RemoveContentRequest,
    VerifyPurchaseRequest,
)
from services.auth_service import bearer_token

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    store: str


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_context(request: Request) -> AppContext:
    return request.app.state.context


async def current_uid(
    authorization: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
) -> str:
    return await ctx.auth.authenticate(authorization)


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the API. Without a context, one is created from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "context", None) is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level, settings.log_format)
            app.state.context = AppContext.build(settings)
        ctx: AppContext = app.state.context
        logger.info("server_starting", version=VERSION, store=ctx.store.name, env=ctx.settings.env)

        yield

        logger.info("server_stopping")
        await ctx.jobs.drain()

    settings = context.settings if context else Settings.from_env()
    app = FastAPI(
        title="Creator Bundles Backend",
        description="Purchase-to-access pipeline for creator bundles",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    register_routes(app)
    return app


# ============================================================================
# ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, ctx: AppContext = Depends(get_context)):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            store=ctx.store.name,
        )

    # ------------------------------------------------------------------------
    # Stripe webhook
    # ------------------------------------------------------------------------

    @app.post("/api/webhooks/stripe")
    async def stripe_webhook(request: Request, ctx: AppContext = Depends(get_context)):
        """
        Stripe event receiver.

        400 when the signature is missing or invalid (nothing is processed),
        500 when a handler fails so Stripe redelivers, 200 otherwise.
        """
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        try:
            result = await ctx.webhooks.handle(payload, signature)
        except WebhookSignatureError as e:
            return JSONResponse(status_code=400, content={"error": e.message})
        except Exception as e:
            return JSONResponse(
                status_code=500,
                content={"error": "Webhook handler failed", "details": str(e)},
            )
        return result

    # ------------------------------------------------------------------------
    # Purchase verification
    # ------------------------------------------------------------------------

    @app.post("/api/verify-purchase")
    async def verify_purchase(
        body: VerifyPurchaseRequest,
        authorization: Optional[str] = Header(default=None),
        ctx: AppContext = Depends(get_context),
    ):
        """Confirm a checkout and make sure the purchase record exists."""
        return await ctx.verifier.verify(
            session_id=body.session_id,
            payment_intent_id=body.payment_intent_id,
            id_token=body.id_token or bearer_token(authorization),
        )

    # ------------------------------------------------------------------------
    # Bundle content
    # ------------------------------------------------------------------------

    @app.get("/api/bundles/{bundle_id}/content")
    async def list_bundle_content(
        bundle_id: str,
        uid: str = Depends(current_uid),
        ctx: AppContext = Depends(get_context),
    ):
        return await ctx.content.list_content(bundle_id, uid)

    @app.post("/api/bundles/{bundle_id}/content")
    async def add_bundle_content(
        bundle_id: str,
        body: AddContentRequest,
        uid: str = Depends(current_uid),
        ctx: AppContext = Depends(get_context),
    ):
        return await ctx.content.add_content(bundle_id, uid, body.upload_ids)

    @app.delete("/api/bundles/{bundle_id}/content")
    async def remove_bundle_content(
        bundle_id: str,
        body: Optional[RemoveContentRequest] = None,
        upload_id: Optional[str] = Query(default=None, alias="uploadId"),
        uid: str = Depends(current_uid),
        ctx: AppContext = Depends(get_context),
    ):
        target = (body.upload_id if body else None) or upload_id
        return await ctx.content.remove_content(bundle_id, uid, target)

    # ------------------------------------------------------------------------
    # Bundle jobs
    # ------------------------------------------------------------------------

    @app.post("/api/bundle-jobs")
    async def create_bundle_job(
        body: BundleJobRequest,
        uid: str = Depends(current_uid),
        ctx: AppContext = Depends(get_context),
    ):
        """Queue a bundle build and return immediately with the job id."""
        if not body.title or not body.description or not body.price or not body.content_ids:
            raise BadRequestError(
                "Missing required fields: title, description, price, contentIds"
            )
        try:
            draft = BundleDraft(
                title=body.title,
                description=body.description,
                price=body.price,
                content_ids=body.content_ids,
                category=body.category or "Mixed Media",
                tags=body.tags,
            )
        except ValidationError as e:
            raise BadRequestError(
                "Invalid bundle data",
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from e

        job_id = await ctx.jobs.submit(uid, draft)
        return {"success": True, "jobId": job_id, "message": "Bundle creation job started"}

    @app.get("/api/bundle-jobs")
    async def get_bundle_job(
        job_id: Optional[str] = Query(default=None, alias="jobId"),
        uid: str = Depends(current_uid),
        ctx: AppContext = Depends(get_context),
    ) -> dict[str, Any]:
        """Poll job progress."""
        if not job_id:
            raise BadRequestError("Job ID required")
        job = await ctx.jobs.get_status(job_id, uid)
        return {"success": True, "job": job.public_view()}


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    settings = Settings.from_env()
    uvicorn.run(
        "api.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env == "development",
        log_level=settings.log_level.lower(),
    )
