"""
Loan Engine API Application Factory
"""

from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..engine import LendingSystem
from ..exceptions import AlreadyRegisteredError, LoanEngineError, NotFoundError
from ..logging_config import get_logger, log_action
from ..notifications import StorageNotificationDispatcher
from .calculator import router as calculator_router
from .delinquency import router as delinquency_router
from .dependencies import get_system
from .loans import applications_router, router as loans_router
from .members import guarantors_router, router as members_router
from .register import router as register_router
from .schemas import serialize_many
from .thresholds import router as thresholds_router


logger = get_logger("loan_engine.api")


def _status_for(error: LoanEngineError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, AlreadyRegisteredError):
        return 409
    return 400


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Engine API",
        description="Loan lifecycle engine: amortization, repayments, delinquency, "
                    "guarantors, monthly thresholds and the loan register",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LendingSystem.from_config()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanEngineError)
    async def engine_error_handler(request: Request, error: LoanEngineError):
        status_code = _status_for(error)
        log_action(logger, "warning", f"{request.method} {request.url.path} failed: {error.message}",
                   action="api_error", resource=request.url.path,
                   extra={"status_code": status_code, "error_type": type(error).__name__})
        return JSONResponse(
            status_code=status_code,
            content={"error": type(error).__name__, "detail": error.message,
                     "details": {k: str(v) for k, v in error.details.items()}},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, error: ValueError):
        return JSONResponse(status_code=400, content={"error": "ValueError", "detail": str(error)})

    # Include routers
    app.include_router(calculator_router, prefix="/calculator", tags=["Calculator"])
    app.include_router(applications_router, prefix="/applications", tags=["Applications"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(members_router, prefix="/members", tags=["Members"])
    app.include_router(guarantors_router, prefix="/guarantors", tags=["Guarantors"])
    app.include_router(thresholds_router, prefix="/thresholds", tags=["Thresholds"])
    app.include_router(delinquency_router, prefix="/delinquency", tags=["Delinquency"])
    app.include_router(register_router, prefix="/register", tags=["Register"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/audit/integrity")
    async def verify_audit_integrity(system: LendingSystem = Depends(get_system)):
        """Re-walk the audit hash chain"""
        return system.audit_trail.verify_integrity()

    @app.get("/audit/{entity_type}/{entity_id}")
    async def get_entity_audit(entity_type: str, entity_id: str,
                               system: LendingSystem = Depends(get_system)):
        events = system.audit_trail.get_events_for_entity(entity_type, entity_id)
        return {"events": serialize_many(events)}

    @app.get("/notifications/{recipient_id}")
    async def get_notifications(recipient_id: str, unread_only: bool = False,
                                system: LendingSystem = Depends(get_system)):
        dispatcher = system.dispatcher
        if not isinstance(dispatcher, StorageNotificationDispatcher):
            stored = [d for d in getattr(dispatcher, "dispatchers", [])
                      if isinstance(d, StorageNotificationDispatcher)]
            if not stored:
                return {"notifications": []}
            dispatcher = stored[0]
        notifications = dispatcher.get_notifications(recipient_id, unread_only=unread_only)
        return {"notifications": serialize_many(notifications)}

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "loan_engine.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
