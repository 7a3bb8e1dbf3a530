"""
WASM KV Runner - HTTP front-end

Thin adapter: each request body is run through a fresh guest instance and
the guest's result bytes become the response body.
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from config import RunnerConfig
from datastore import DatastoreError, create_datastore
from metrics import get_metrics
from sandbox import CompilationError, SandboxError, WasmRunner

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    module_compiled: bool
    datastore_backend: str


def create_app(config: Optional[RunnerConfig] = None, runner: Optional[WasmRunner] = None) -> FastAPI:
    """Build the FastAPI app around one shared runner."""
    config = config or (runner.config if runner else RunnerConfig.from_env())
    runner = runner or WasmRunner(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Compile the guest module once before serving."""
        logger.info(f"Starting WASM KV runner with config {config.to_dict()}")
        try:
            runner.compile()
        except CompilationError as e:
            # requests will keep failing until the artifact is fixed
            logger.error(f"Guest module unavailable at startup: {e}")
        yield
        logger.info("Shutting down WASM KV runner")

    app = FastAPI(
        title="WASM KV Runner",
        description="Runs sandboxed WebAssembly guests per request with a key-value capability",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.runner = runner
    app.state.config = config

    @app.post("/invoke")
    async def invoke(request: Request):
        """Run the request body through the guest and return its result bytes."""
        body = await request.body()
        try:
            result = await runner.execute(body, create_datastore(config))
        except (SandboxError, DatastoreError) as e:
            logger.error(f"Request failed: {e}")
            raise HTTPException(status_code=500, detail="Guest execution failed")
        return Response(content=result.output, media_type=config.content_type)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint"""
        compiled = await runner.health_check()
        return HealthResponse(
            status="healthy" if compiled else "degraded",
            module_compiled=compiled,
            datastore_backend=config.datastore_backend
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return get_metrics()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
