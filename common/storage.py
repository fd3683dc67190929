import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic_core import to_jsonable_python

# STORAGE_BACKEND determines which logic branch (local/gcp/azure) runs.
from common.config import (
    AZURE_CONTAINER,
    AZURE_STORAGE_CONNECTION_STRING,
    GCS_BUCKET,
    LOCAL_DATA_DIR,
    SIGNED_URL_TTL_DAYS,
    STORAGE_BACKEND,
)
from common.errors import StoreError
from common.imaging import OutputArtifact
from common.job_schema import Job, Project, ProjectEdit

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Cloud SDKs are only needed by the backend that is actually configured.
# ------------------------------------------------------------------------------

# 1. Google Cloud Storage SDK
try:
    from google.cloud import storage as gcs
except ImportError:
    gcs = None

# 2. Azure Blob Storage SDK
try:
    from azure.storage.blob import (
        BlobSasPermissions,
        BlobServiceClient,
        ContentSettings,
        generate_blob_sas,
    )
except ImportError:
    BlobServiceClient = None

# ------------------------------------------------------------------------------
# CONSTANTS
# Layout of the JSON "database" documents and the media folder inside the
# bucket/container (or under LOCAL_DATA_DIR).
# ------------------------------------------------------------------------------
COLLECTIONS = {
    "jobs": "jobs/jobs.json",
    "projects": "projects/projects.json",
    "project_edits": "projects/project_edits.json",
}
MEDIA_PREFIX = "media/"

BACKENDS = ("local", "gcp", "azure")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_backend(backend: str) -> str:
    if backend not in BACKENDS:
        raise StoreError(f"Unsupported STORAGE_BACKEND: {backend}")
    return backend


# ------------------------------------------------------------------------------
# CLIENT HELPERS
# ------------------------------------------------------------------------------

def _get_gcs_client():
    """Returns an authenticated GCS client."""
    if not gcs:
        raise StoreError("google-cloud-storage library is not installed.")
    return gcs.Client()


def _get_azure_client(connection_string: Optional[str]):
    """Creates a BlobServiceClient using the connection string."""
    if not BlobServiceClient:
        raise StoreError("azure-storage-blob library is not installed.")
    if not connection_string:
        raise StoreError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(connection_string)


class _Backend:
    """Reads and writes raw objects on the configured backend."""

    def __init__(
        self,
        backend: str = STORAGE_BACKEND,
        local_dir: Path = LOCAL_DATA_DIR,
        gcs_bucket: Optional[str] = GCS_BUCKET,
        azure_container: Optional[str] = AZURE_CONTAINER,
        azure_connection_string: Optional[str] = AZURE_STORAGE_CONNECTION_STRING,
    ):
        self.backend = _check_backend(backend)
        self.local_dir = Path(local_dir)
        self.gcs_bucket = gcs_bucket
        self.azure_container = azure_container
        self.azure_connection_string = azure_connection_string

        if self.backend == "gcp" and not self.gcs_bucket:
            raise StoreError("GCS_BUCKET is required for GCP backend")
        if self.backend == "azure" and not self.azure_container:
            raise StoreError("AZURE_CONTAINER env var is required for Azure backend")

    def _bucket(self):
        return _get_gcs_client().bucket(self.gcs_bucket)

    def _container(self):
        client = _get_azure_client(self.azure_connection_string)
        return client, client.get_container_client(self.azure_container)


# ------------------------------------------------------------------------------
# JOB STORE
# Jobs, projects and project edits, each kept as one JSON array document.
# ------------------------------------------------------------------------------

class JobStore(_Backend):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Guards every read and read-modify-write of the JSON documents
        self._lock = threading.RLock()

    def _read(self, collection: str) -> List[Dict[str, Any]]:
        object_name = COLLECTIONS[collection]
        try:
            if self.backend == "local":
                path = self.local_dir / object_name
                content = path.read_text() if path.exists() else "[]"
            elif self.backend == "gcp":
                blob = self._bucket().blob(object_name)
                content = blob.download_as_text() if blob.exists() else "[]"
            else:
                _, container_client = self._container()
                blob_client = container_client.get_blob_client(object_name)
                content = blob_client.download_blob().readall() if blob_client.exists() else "[]"
            if not content.strip():
                content = "[]"
            return json.loads(content)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to read {object_name}: {e}") from e

    def _write(self, collection: str, records: List[Dict[str, Any]]) -> None:
        object_name = COLLECTIONS[collection]
        body = json.dumps(records, indent=2)
        try:
            if self.backend == "local":
                path = self.local_dir / object_name
                path.parent.mkdir(parents=True, exist_ok=True)
                # Readers only ever see a complete document: write beside it, then swap in
                with tempfile.NamedTemporaryFile("w", dir=path.parent, suffix=".tmp", delete=False) as tmp:
                    tmp.write(body)
                os.replace(tmp.name, path)
            elif self.backend == "gcp":
                self._bucket().blob(object_name).upload_from_string(body, content_type="application/json")
            else:
                _, container_client = self._container()
                container_client.get_blob_client(object_name).upload_blob(body, overwrite=True)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to write {object_name}: {e}") from e

    def _find(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            records = self._read(collection)
        return next((r for r in records if r.get("id") == record_id), None)

    def _insert(self, collection: str, record: Dict[str, Any]) -> None:
        with self._lock:
            records = self._read(collection)
            records.append(record)
            self._write(collection, records)

    def _patch(self, collection: str, record_id: str, fields: Dict[str, Any]) -> bool:
        with self._lock:
            records = self._read(collection)
            for record in records:
                if record.get("id") == record_id:
                    record.update(fields)
                    self._write(collection, records)
                    return True
        return False

    # ---------- Jobs ----------

    def create_job(self, job: Job) -> Job:
        self._insert("jobs", job.model_dump(mode="json"))
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        record = self._find("jobs", job_id)
        return Job.model_validate(record) if record else None

    def update_job(self, job_id: str, **fields: Any) -> None:
        """Partially update a job, e.g. update_job(id, status=JobStatus.RUNNING)."""
        if not self._patch("jobs", job_id, to_jsonable_python(fields)):
            raise StoreError(f"Job {job_id} not found")

    # ---------- Projects ----------

    def create_project(self, project: Project) -> Project:
        self._insert("projects", project.model_dump(mode="json"))
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        record = self._find("projects", project_id)
        return Project.model_validate(record) if record else None

    def update_project(self, project_id: str, **fields: Any) -> None:
        if not self._patch("projects", project_id, to_jsonable_python(fields)):
            # Matches an UPDATE ... WHERE id = ? that touches no rows
            logger.warning(f"Project {project_id} not found, nothing updated")

    # ---------- Project edits ----------

    def add_project_edit(self, edit: ProjectEdit) -> ProjectEdit:
        self._insert("project_edits", edit.model_dump(mode="json"))
        return edit

    def list_project_edits(self, project_id: str) -> List[ProjectEdit]:
        with self._lock:
            records = self._read("project_edits")
        return [
            ProjectEdit.model_validate(r)
            for r in records
            if r.get("project_id") == project_id
        ]


# ------------------------------------------------------------------------------
# OBJECT STORE
# Final output bytes: non-overwriting upload followed by a time-limited URL.
# ------------------------------------------------------------------------------

class StoredObject(NamedTuple):
    path: str
    url: str


class ObjectStore(_Backend):
    def __init__(self, *args, signed_url_ttl: timedelta = timedelta(days=SIGNED_URL_TTL_DAYS), **kwargs):
        super().__init__(*args, **kwargs)
        self.signed_url_ttl = signed_url_ttl

    @staticmethod
    def object_name(user_id: str, artifact: OutputArtifact, now: datetime) -> str:
        # e.g. media/u/<user>/1718000000000/ai-output.png
        millis = int(now.timestamp() * 1000)
        return f"{MEDIA_PREFIX}u/{user_id}/{millis}/ai-output.{artifact.extension}"

    def upload_artifact(self, user_id: str, artifact: OutputArtifact, now: Optional[datetime] = None) -> StoredObject:
        now = now or _now()
        object_name = self.object_name(user_id, artifact, now)
        try:
            if self.backend == "local":
                url = self._upload_local(object_name, artifact)
            elif self.backend == "gcp":
                url = self._upload_gcs(object_name, artifact)
            else:
                url = self._upload_azure(object_name, artifact, now)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to store {object_name}: {e}") from e

        logger.info(f"Stored {artifact.content_type} output at {object_name} ({len(artifact.data)} bytes)")
        return StoredObject(path=object_name, url=url)

    def _upload_local(self, object_name: str, artifact: OutputArtifact) -> str:
        dest = self.local_dir / object_name
        dest.parent.mkdir(parents=True, exist_ok=True)
        # "xb" refuses to overwrite an existing output
        with open(dest, "xb") as f:
            f.write(artifact.data)
        # Local files have no signing; the absolute file URI is the reference
        return dest.resolve().as_uri()

    def _upload_gcs(self, object_name: str, artifact: OutputArtifact) -> str:
        blob = self._bucket().blob(object_name)
        # if_generation_match=0 makes the upload fail if the object exists
        blob.upload_from_string(artifact.data, content_type=artifact.content_type, if_generation_match=0)
        return blob.generate_signed_url(version="v4", expiration=self.signed_url_ttl, method="GET")

    def _upload_azure(self, object_name: str, artifact: OutputArtifact, now: datetime) -> str:
        client, container_client = self._container()
        blob_client = container_client.get_blob_client(object_name)
        blob_client.upload_blob(
            artifact.data,
            overwrite=False,
            content_settings=ContentSettings(content_type=artifact.content_type),
        )
        sas = generate_blob_sas(
            account_name=client.account_name,
            container_name=self.azure_container,
            blob_name=object_name,
            account_key=client.credential.account_key,
            permission=BlobSasPermissions(read=True),
            expiry=now + self.signed_url_ttl,
        )
        return f"{blob_client.url}?{sas}"
