from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agents.orchestrator import HandoffOrchestrator
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limiting import RateLimitMiddleware
from api.routers import admin, conversations, escalations, matching, sessions
from models.errors import HandoffError
from settings import SETTINGS

logger = logging.getLogger(__name__)

STATUS_BY_ERROR_CODE = {
    "not_found": 404,
    "unauthorized": 403,
    "invalid_state": 409,
    "active_session_exists": 409,
    "no_candidates": 422,
    "persistence_failure": 503,
}


def create_app(orchestrator: HandoffOrchestrator | None = None) -> FastAPI:
    app = FastAPI(title="Professional Hand-off Service", version="0.1.0", debug=SETTINGS.debug)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.state.orchestrator = orchestrator or HandoffOrchestrator()

    @app.exception_handler(HandoffError)
    async def handoff_error_handler(request: Request, exc: HandoffError):
        status_code = STATUS_BY_ERROR_CODE.get(exc.code, 400)
        if status_code >= 500:
            logger.error("handoff_request_failed", extra={"path": request.url.path, "error": exc.code})
        return JSONResponse(exc.to_dict(), status_code=status_code)

    api_prefix = "/api/v1"
    app.include_router(sessions.router, prefix=api_prefix)
    app.include_router(matching.router, prefix=api_prefix)
    app.include_router(escalations.router, prefix=api_prefix)
    app.include_router(conversations.router, prefix=api_prefix)
    app.include_router(admin.router, prefix=api_prefix)

    @app.get("/health")
    async def health():
        orch: HandoffOrchestrator = app.state.orchestrator
        return {
            "ok": True,
            "service": "professional-handoff",
            "llm_provider": orch.llm.provider,
            "llm_model": orch.llm.model,
            "llm_runtime_available": orch.llm.available(),
        }

    return app


app = create_app()
