from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from convo_ai.config import settings
from convo_ai.database import SessionLocal, init_db
from convo_ai.api import routes
from convo_ai.api.deps import get_generation_client, get_locks
from convo_ai.services.scheduler import init_scheduler, start_scheduler, stop_scheduler
from convo_ai.utils.logger import init_app_logger

logger = init_app_logger(settings)

# Initialize database
init_db()

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(routes.router)


@app.on_event("startup")
async def startup_event():
    """Start the job queues on app startup"""
    if settings.enable_workers:
        init_scheduler(
            SessionLocal,
            get_generation_client(),
            get_locks(),
            preview_max_length=settings.preview_max_length,
            webhook_timeout=settings.webhook_timeout,
            webhook_user_agent=f"{settings.app_name.replace(' ', '')}-Webhook/1.0",
            retention_sweep_minutes=settings.retention_sweep_minutes,
        )
        start_scheduler()
    logger.info(f"{settings.app_name} started (workers {'on' if settings.enable_workers else 'off'})")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the job queues on app shutdown"""
    stop_scheduler()
    logger.info(f"{settings.app_name} stopped")


@app.get("/")
def read_root():
    return {
        "message": f"Welcome to {settings.app_name}",
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
