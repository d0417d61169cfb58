# ============================================================================
#  File: server.py
#  Purpose: HTTP job submission API and WebSocket progress subscriptions
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
import json
import os
from contextlib import asynccontextmanager
from typing import Any, Dict

import uvicorn
from fastapi import Body, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sflflow.broadcaster import WebSocketChannel
from sflflow.config_manager import ConfigManager
from sflflow.engine import Engine, build_engine
from sflflow.errors import QueueError, WorkflowRejectedError
from sflflow.log_setup import configure_logging
from sflflow.validator import check_workflow


class SubmitJobRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    workflow_id: str = Field(min_length=1)
    workflow: Dict[str, Any]
    user_input: Any = None

# =========================================================================
# SECTION 2: Application Factory
# =========================================================================
# Function 2.1: create_app
# =========================================================================
def create_app(engine: Engine) -> FastAPI:
    """
    Builds the FastAPI application around an already composed engine.

    The lifespan starts the worker pool on startup and stops it (and closes
    the job store) on shutdown.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        await engine.start()
        yield
        logger.info("Application shutting down.")
        await engine.close()

    app = FastAPI(title="sflflow", lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =====================================================================
    # SECTION 3: HTTP Endpoints
    # =====================================================================
    @app.get("/health")
    async def health_check():
        """Provides a simple health check endpoint."""
        return {"status": "ok", "workers": engine.queue.running}

    @app.post("/api/workflows/validate")
    async def validate_workflow_document(document: Any = Body(...)):
        """Schema and cycle validation without enqueueing."""
        return check_workflow(document).to_dict()

    @app.post("/api/jobs", status_code=202)
    async def submit_job(request: SubmitJobRequest):
        try:
            job_id = await engine.queue.submit(request.workflow_id, request.workflow, request.user_input)
        except WorkflowRejectedError as e:
            return JSONResponse(
                status_code=422,
                content={
                    "message": str(e),
                    "category": e.category,
                    "errors": e.result.errors,
                    "fieldErrors": e.result.field_errors,
                },
            )
        except QueueError as e:
            logger.error(f"Job submission failed: {str(e)}")
            return JSONResponse(status_code=503, content={"message": str(e)})
        return {"jobId": job_id}

    @app.get("/api/jobs/{job_id}")
    async def get_job_status(job_id: str):
        try:
            status = await engine.queue.get_status(job_id)
        except QueueError as e:
            logger.error(f"Status lookup for job {job_id} failed: {str(e)}")
            return JSONResponse(status_code=503, content={"message": str(e)})
        if status is None:
            return JSONResponse(status_code=404, content={"message": f"Job {job_id} not found"})
        return status

    # =====================================================================
    # SECTION 4: Progress WebSocket
    # =====================================================================
    @app.websocket("/ws")
    async def progress_socket(websocket: WebSocket):
        await websocket.accept()
        channel = WebSocketChannel(websocket)
        logger.info(f"[WS] Connection accepted for {channel.client}")
        await websocket.send_json({"type": "connected", "message": "Connected to workflow progress updates"})

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError as e:
                    await websocket.send_json({"type": "error", "message": f"Invalid JSON: {str(e)}"})
                    continue

                kind = message.get("type") if isinstance(message, dict) else None
                job_id = message.get("jobId") if isinstance(message, dict) else None
                if kind not in ("subscribe", "unsubscribe") or not isinstance(job_id, str) or not job_id:
                    await websocket.send_json({
                        "type": "error",
                        "message": "Expected {\"type\": \"subscribe\" | \"unsubscribe\", \"jobId\": \"...\"}",
                    })
                    continue

                if kind == "subscribe":
                    await engine.broadcaster.subscribe(job_id, channel)
                    await websocket.send_json({"type": "subscribed", "jobId": job_id})
                else:
                    await engine.broadcaster.unsubscribe(job_id, channel)
                    await websocket.send_json({"type": "unsubscribed", "jobId": job_id})

        except WebSocketDisconnect as e:
            logger.info(f"[WS] Client {channel.client} disconnected: {e.code}")
        finally:
            await engine.broadcaster.unsubscribe_all(channel)

    return app

# =========================================================================
# Section 5: Main Execution
# =========================================================================

def main():
    config_manager = ConfigManager(os.getenv("SFLFLOW_CONFIG"))
    settings = config_manager.get()
    configure_logging(settings)
    app = create_app(build_engine(settings))
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

#
#
## End of Script
