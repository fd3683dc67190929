import logging
from typing import Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool

from common.config import API_HOST, API_PORT, DEBUG
from worker.worker import JobRunner, create_runner

logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def create_app(runner: Optional[JobRunner] = None) -> FastAPI:
    app = FastAPI(title="AI Job Runner")
    app.state.runner = runner or create_runner()

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.post("/ai-run")
    async def ai_run(request: Request, background_tasks: BackgroundTasks):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        job_id = (body.get("jobId") or body.get("job_id")) if isinstance(body, dict) else None
        if not job_id:
            return JSONResponse({"error": "jobId required"}, status_code=400)

        runner: JobRunner = request.app.state.runner
        job = await run_in_threadpool(runner.job_store.get_job, str(job_id))
        if not job:
            return JSONResponse({"error": "Job not found"}, status_code=404)

        # Runs after the response is sent; the request does not wait for it
        background_tasks.add_task(runner.process_job, job)
        logger.info(f"Dispatched job {job.id} ({job.operation})")
        return {"ok": True}

    @app.get("/jobs/{job_id}")
    def read_job(job_id: str, request: Request):
        job = request.app.state.runner.job_store.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    return app


app = create_app()

if __name__ == "__main__":
    logger.info(f"Starting AI Job Runner on {API_HOST}:{API_PORT}")
    uvicorn.run(app, host=API_HOST, port=API_PORT)
