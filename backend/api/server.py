# api/server.py
# ============================================================================
# DIGITAL CARD BACKEND — FASTAPI SERVER
# ============================================================================
# Checkout, Stripe webhook and direct mail endpoints
# ============================================================================

import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from config import Settings
from pipeline.agents.checkout_initiator import CheckoutRequest
from pipeline.errors import NotificationError, ProvisioningError
from schemas.card_models import CardContent, PlanTier
from services.container import ServiceContainer

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreateCheckoutSessionRequest(BaseModel):
    """Body of POST /create-checkout-session."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    custom_url: str = Field(..., alias="customUrl", min_length=1)
    plan: PlanTier
    site_id: Optional[str] = Field(default=None, alias="siteId")
    site_data: Optional[CardContent] = Field(default=None, alias="siteData")
    email: str = Field(..., min_length=3)

    def to_checkout(self) -> CheckoutRequest:
        return CheckoutRequest(
            plan=self.plan,
            email=self.email,
            custom_url=self.custom_url,
            user_id=self.user_id,
            site_id=self.site_id,
            site_data=self.site_data,
        )


class CreateCheckoutSessionResponse(BaseModel):
    sessionId: str


class SendEmailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str = Field(..., min_length=3)
    subject: str
    body: str
    is_html: bool = Field(default=False, alias="isHtml")


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Without an injected container the lifespan loads Settings from the
    environment and wires production services, so missing configuration
    stops the process at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION)
        owned = None
        if getattr(app.state, "container", None) is None:
            settings = Settings.from_env()
            owned = await ServiceContainer.create(settings)
            app.state.container = owned

        yield

        logger.info("server_shutting_down")
        if owned is not None:
            await owned.close()
            app.state.container = None

    app = FastAPI(
        title="Digital Card Backend",
        description="Checkout and payment-driven provisioning of digital cards",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.started_at = datetime.utcnow()

    if container is not None:
        cors_origins = container.settings.CORS_ORIGINS
    else:
        # Middleware is fixed before the lifespan loads Settings
        cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    def services(request: Request) -> ServiceContainer:
        found = getattr(request.app.state, "container", None)
        if found is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return found

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        uptime = (datetime.utcnow() - request.app.state.started_at).total_seconds()
        return HealthResponse(status="healthy", version=VERSION, uptime_seconds=uptime)

    @app.post("/create-checkout-session", response_model=CreateCheckoutSessionResponse)
    async def create_checkout_session(body: CreateCheckoutSessionRequest, request: Request):
        container = services(request)
        try:
            session_id = await container.checkout.create_session(body.to_checkout())
        except ProvisioningError as e:
            logger.error("checkout_error", error=str(e), custom_url=body.custom_url)
            raise HTTPException(
                status_code=e.http_status,
                detail={"error": "Erro ao criar sessão de checkout", "details": str(e)},
            )
        return CreateCheckoutSessionResponse(sessionId=session_id)

    @app.post("/webhook")
    async def stripe_webhook(request: Request):
        """
        Stripe webhook handler.

        The body is read as raw bytes; signature verification happens before
        any JSON parsing.
        """
        container = services(request)
        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        try:
            event = container.verifier.verify(payload, signature)
            result = await container.orchestrator.handle(event)
        except ProvisioningError as e:
            logger.error(
                "webhook_error",
                error=str(e),
                error_type=type(e).__name__,
                status_code=e.http_status,
            )
            raise HTTPException(status_code=e.http_status, detail=f"Webhook Error: {e}")

        logger.info("webhook_handled", event_id=result.event_id, outcome=result.outcome.value)
        return {"received": True}

    @app.post("/send-email")
    async def send_email(body: SendEmailRequest, request: Request):
        container = services(request)
        try:
            await container.composer.send_raw(body.to, body.subject, body.body, is_html=body.is_html)
        except NotificationError as e:
            raise HTTPException(status_code=500, detail={"error": "Erro ao enviar email", "details": str(e)})
        return {"message": "Email sent successfully"}

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "development") == "development",
        log_level="info",
    )
