from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from app.core.config import settings
from app.core.container import ServiceContainer
from app.core.exceptions import AppError
from app.api.routes import cancellations, refunds

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer = None) -> FastAPI:
    """Build the application. Tests pass a container with their own stores."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Refunds and event cancellations for EventPass: eligibility, settlement and attendee compensation",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.container = container or ServiceContainer(settings)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    # Startup and shutdown events
    @app.on_event("startup")
    async def startup_event():
        """Initialize services and finish work interrupted by the last shutdown."""
        logger.info("Starting up EventPass refunds backend...")
        await app.state.container.start()
        await app.state.container.recover()
        logger.info("EventPass refunds backend started successfully")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Clean up services on shutdown."""
        logger.info("Shutting down EventPass refunds backend...")
        await app.state.container.stop()
        logger.info("EventPass refunds backend shut down successfully")

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "eventpass-refunds",
            "version": "1.0.0"
        }

    # Root endpoint
    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.PROJECT_NAME,
            "version": "1.0.0",
            "description": "EventPass Refunds API",
            "docs": "/docs",
            "health": "/health"
        }

    # Include routers
    app.include_router(refunds.router, prefix=f"{settings.API_V1_PREFIX}/refunds", tags=["Refunds"])
    app.include_router(cancellations.router, prefix=f"{settings.API_V1_PREFIX}/cancellations", tags=["Cancellations"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
