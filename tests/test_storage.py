import threading
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from common.errors import StoreError
from common.imaging import JPEG, PNG, OutputArtifact
from common.job_schema import Job, JobStatus, Project, ProjectEdit
from common.storage import COLLECTIONS, JobStore, ObjectStore

WHEN = datetime(2024, 6, 10, 6, 13, 20, tzinfo=timezone.utc)


def test_job_round_trip(job_store):
    job_store.create_job(Job(id="j1", user_id="u", project_id="p", operation="imagen4", payload={"prompt": "x"}))

    job = job_store.get_job("j1")
    assert job.status == JobStatus.QUEUED
    assert job.payload == {"prompt": "x"}
    assert job_store.get_job("other") is None


def test_update_job_only_touches_given_fields(job_store):
    job_store.create_job(Job(id="j1", user_id="u", project_id="p", operation="upscale", input_image_url="in"))

    job_store.update_job("j1", status=JobStatus.RUNNING, started_at=WHEN)

    job = job_store.get_job("j1")
    assert job.status == JobStatus.RUNNING
    assert job.started_at == WHEN
    assert job.input_image_url == "in"
    assert job.completed_at is None


def test_update_unknown_job_raises(job_store):
    with pytest.raises(StoreError, match="Job missing not found"):
        job_store.update_job("missing", status=JobStatus.FAILED)


def test_update_unknown_project_is_a_no_op(job_store, tmp_path):
    job_store.create_project(Project(id="p1", user_id="u"))

    job_store.update_project("p2", output_image_url="x")

    assert job_store.get_project("p1").output_image_url is None
    assert job_store.get_project("p2") is None


def test_project_edits_are_filtered_by_project(job_store):
    job_store.add_project_edit(ProjectEdit(project_id="a", edit_name="Upscale"))
    job_store.add_project_edit(ProjectEdit(project_id="b", edit_name="Inpaint"))
    job_store.add_project_edit(ProjectEdit(project_id="a", edit_name="Imagen4"))

    assert [e.edit_name for e in job_store.list_project_edits("a")] == ["Upscale", "Imagen4"]


def test_corrupt_document_raises_store_error(job_store, tmp_path):
    path = tmp_path / COLLECTIONS["jobs"]
    path.parent.mkdir(parents=True)
    path.write_text("{not json")

    with pytest.raises(StoreError, match="jobs/jobs.json"):
        job_store.get_job("j1")


def test_empty_document_reads_as_no_records(job_store, tmp_path):
    path = tmp_path / COLLECTIONS["projects"]
    path.parent.mkdir(parents=True)
    path.write_text("  \n")

    assert job_store.get_project("p1") is None


@pytest.mark.parametrize("fmt,ext", [(PNG, "png"), (JPEG, "jpg")])
def test_object_name(fmt, ext):
    artifact = OutputArtifact(data=b"x", format=fmt)
    assert ObjectStore.object_name("user-1", artifact, WHEN) == f"media/u/user-1/1718000000000/ai-output.{ext}"


def test_local_upload_returns_file_uri(object_store, tmp_path, png_bytes):
    stored = object_store.upload_artifact("user-1", OutputArtifact.from_bytes(png_bytes), now=WHEN)

    dest = tmp_path / stored.path
    assert dest.read_bytes() == png_bytes
    assert stored.url == dest.resolve().as_uri()


def test_local_upload_never_overwrites(object_store, png_bytes):
    artifact = OutputArtifact.from_bytes(png_bytes)
    object_store.upload_artifact("user-1", artifact, now=WHEN)

    with pytest.raises(StoreError, match="Failed to store"):
        object_store.upload_artifact("user-1", artifact, now=WHEN)


@pytest.mark.parametrize("kwargs,message", [
    ({"backend": "ftp"}, "Unsupported STORAGE_BACKEND"),
    ({"backend": "gcp", "gcs_bucket": None}, "GCS_BUCKET"),
    ({"backend": "azure", "azure_container": None}, "AZURE_CONTAINER"),
])
def test_backend_configuration_is_checked(tmp_path, kwargs, message):
    with pytest.raises(StoreError, match=message):
        JobStore(local_dir=tmp_path, **kwargs)
    with pytest.raises(StoreError, match=message):
        ObjectStore(local_dir=tmp_path, **kwargs)


@pytest.mark.parametrize("shared", [True, False], ids=["same-store", "separate-stores"])
def test_reads_during_writes_never_miss_existing_jobs(tmp_path, shared):
    writer_store = JobStore(local_dir=tmp_path)
    for i in range(50):
        writer_store.create_job(Job(id=f"j{i}", user_id="u", project_id="p", operation="imagen4"))
    reader_store = writer_store if shared else JobStore(local_dir=tmp_path)

    stop = threading.Event()
    errors = []

    def keep_writing():
        n = 0
        while not stop.is_set():
            try:
                writer_store.update_job("j0", error=f"tick {n}")
            except StoreError as e:
                errors.append(e)
            n += 1

    writer = threading.Thread(target=keep_writing)
    writer.start()
    try:
        misses = sum(1 for _ in range(300) if reader_store.get_job("j49") is None)
    finally:
        stop.set()
        writer.join()

    assert misses == 0
    assert errors == []
    assert list(tmp_path.rglob("*.tmp")) == []


@pytest.fixture
def gcs_blob():
    with mock.patch("common.storage.gcs") as gcs:
        blob = gcs.Client.return_value.bucket.return_value.blob.return_value
        blob.generate_signed_url.return_value = "https://storage.googleapis.com/signed"
        yield gcs, blob


def test_gcs_upload_is_conditional_and_signed_for_a_week(gcs_blob, png_bytes):
    gcs, blob = gcs_blob
    store = ObjectStore(backend="gcp", gcs_bucket="media-bucket")

    stored = store.upload_artifact("user-1", OutputArtifact.from_bytes(png_bytes), now=WHEN)

    bucket = gcs.Client.return_value.bucket
    bucket.assert_called_with("media-bucket")
    bucket.return_value.blob.assert_called_with(stored.path)
    blob.upload_from_string.assert_called_once_with(png_bytes, content_type="image/png", if_generation_match=0)
    blob.generate_signed_url.assert_called_once_with(version="v4", expiration=timedelta(days=7), method="GET")
    assert stored.url == "https://storage.googleapis.com/signed"


def test_gcs_existing_object_is_a_store_error(gcs_blob, jpeg_bytes):
    _, blob = gcs_blob
    blob.upload_from_string.side_effect = RuntimeError("412 Precondition Failed")
    store = ObjectStore(backend="gcp", gcs_bucket="media-bucket")

    with pytest.raises(StoreError, match="Precondition Failed"):
        store.upload_artifact("user-1", OutputArtifact.from_bytes(jpeg_bytes), now=WHEN)
    blob.generate_signed_url.assert_not_called()


def test_azure_upload_refuses_overwrite_and_issues_week_long_sas(jpeg_bytes):
    with mock.patch("common.storage.BlobServiceClient") as service, \
            mock.patch("common.storage.ContentSettings", create=True) as content_settings, \
            mock.patch("common.storage.BlobSasPermissions", create=True) as permissions, \
            mock.patch("common.storage.generate_blob_sas", create=True, return_value="sig=abc") as make_sas:
        client = service.from_connection_string.return_value
        client.account_name = "acct"
        client.credential.account_key = "secret"
        blob_client = client.get_container_client.return_value.get_blob_client.return_value
        blob_client.url = "https://acct.blob.core.windows.net/outputs/obj"

        store = ObjectStore(backend="azure", azure_container="outputs", azure_connection_string="conn")
        stored = store.upload_artifact("user-1", OutputArtifact.from_bytes(jpeg_bytes), now=WHEN)

    service.from_connection_string.assert_called_once_with("conn")
    client.get_container_client.assert_called_with("outputs")
    content_settings.assert_called_once_with(content_type="image/jpeg")
    blob_client.upload_blob.assert_called_once_with(
        jpeg_bytes,
        overwrite=False,
        content_settings=content_settings.return_value,
    )
    permissions.assert_called_once_with(read=True)
    make_sas.assert_called_once_with(
        account_name="acct",
        container_name="outputs",
        blob_name=stored.path,
        account_key="secret",
        permission=permissions.return_value,
        expiry=WHEN + timedelta(days=7),
    )
    assert stored.path.endswith("/ai-output.jpg")
    assert stored.url == "https://acct.blob.core.windows.net/outputs/obj?sig=abc"
