"""FastAPI application entry point."""

from fastapi import FastAPI

from .routes import jobs, runs

app = FastAPI(
    title="Backfill API",
    description="Start, inspect and cancel MySQL to ClickHouse backfill runs",
    version="1.0.0",
)

# Include routers
app.include_router(jobs.router, prefix="/api", tags=["jobs"])
app.include_router(runs.router, prefix="/api/runs", tags=["runs"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
