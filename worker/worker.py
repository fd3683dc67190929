import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Callable, Optional

from common.config import DEBUG
from common.errors import StoreError
from common.job_schema import Job, JobStatus, ProjectEdit
from common.storage import JobStore, ObjectStore
from worker.engine import ExecutionEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRunner:
    """Drives one job from queued to completed or failed.

    The runner is the only writer of a job's status, timestamps, result and
    error. Once ``process_job`` has marked a job running it always leaves it
    completed or failed before returning.
    """

    def __init__(
        self,
        job_store: JobStore,
        object_store: ObjectStore,
        engine: ExecutionEngine,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.job_store = job_store
        self.object_store = object_store
        self.engine = engine
        self.clock = clock

    def run_job_id(self, job_id: str) -> Optional[Job]:
        job = self.job_store.get_job(job_id)
        if job is None:
            return None
        self.process_job(job)
        return self.job_store.get_job(job_id)

    def process_job(self, job: Job) -> None:
        if job.is_terminal:
            logger.warning(f"Job {job.id} is already {job.status.value}, skipping")
            return

        try:
            self.job_store.update_job(job.id, status=JobStatus.RUNNING, started_at=self.clock())
        except StoreError as e:
            logger.error(f"Could not mark job {job.id} running, not starting it: {e}")
            return

        try:
            self._complete(job)
        except Exception as e:
            self._fail(job, e)

    def _complete(self, job: Job) -> None:
        artifact = self.engine.run(job.operation, job.payload, job.input_image_url)
        descriptor = self.engine.describe(job.operation)

        artifact = artifact.encoded_as(descriptor.force_format)
        stored = self.object_store.upload_artifact(job.user_id, artifact, now=self.clock())

        self.job_store.update_job(
            job.id,
            status=JobStatus.COMPLETED,
            result_url=stored.url,
            error=None,
            completed_at=self.clock(),
        )

        project_fields = {"output_image_url": stored.url, "thumbnail_url": stored.url}
        if descriptor.seeds_original_image:
            # Text-to-image establishes the project's first image
            project_fields["original_image_url"] = stored.url
        self.job_store.update_project(job.project_id, **project_fields)

        self.job_store.add_project_edit(ProjectEdit(
            project_id=job.project_id,
            edit_name=descriptor.display_name,
            parameters=job.payload,
            input_image_url=job.input_image_url,
            output_image_url=stored.url,
            credit_cost=0,
            status=JobStatus.COMPLETED,
            created_at=self.clock(),
        ))
        logger.info(f"Processed job {job.id} ({job.operation}) -> {stored.path}")

    def _fail(self, job: Job, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        logger.error(f"Failed job {job.id} ({job.operation}): {message}")
        try:
            self.job_store.update_job(
                job.id,
                status=JobStatus.FAILED,
                error=message,
                result_url=None,
                completed_at=self.clock(),
            )
        except StoreError:
            logger.exception(f"Could not record failure for job {job.id}")


def create_runner(
    job_store: Optional[JobStore] = None,
    object_store: Optional[ObjectStore] = None,
    engine: Optional[ExecutionEngine] = None,
) -> JobRunner:
    return JobRunner(
        job_store=job_store or JobStore(),
        object_store=object_store or ObjectStore(),
        engine=engine or ExecutionEngine.from_client(),
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a single AI job to completion.")
    parser.add_argument("job_id")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if DEBUG else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    job = create_runner().run_job_id(args.job_id)
    if job is None:
        logger.error(f"Job {args.job_id} not found")
        return 1
    logger.info(f"Job {job.id} finished with status {job.status.value}")
    return 0 if job.status == JobStatus.COMPLETED else 2


if __name__ == "__main__":
    sys.exit(main())
