import io
from collections import defaultdict

import pytest
from PIL import Image

from common.job_schema import Job, Project
from common.storage import JobStore, ObjectStore
from worker.engine import ExecutionEngine
from worker.fal_client import FalClient
from worker.worker import JobRunner

RUN_BASE = "https://run.test"
QUEUE_BASE = "https://queue.test"


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, content=b"", text=""):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Stand-in for requests.Session with scripted replies per (method, url).

    Replies are consumed in order; the last one repeats. A reply may be an
    exception instance, which is raised instead of returned.
    """

    def __init__(self):
        self.routes = defaultdict(list)
        self.calls = []

    def add(self, method, url, *replies):
        self.routes[(method, url)].extend(replies)
        return self

    def count(self, method=None, url=None):
        return sum(
            1 for m, u, _, _ in self.calls
            if (method is None or m == method) and (url is None or u == url)
        )

    def post(self, url, json=None, headers=None, timeout=None):
        return self._dispatch("POST", url, json, headers)

    def get(self, url, headers=None, timeout=None):
        return self._dispatch("GET", url, None, headers)

    def _dispatch(self, method, url, body, headers):
        self.calls.append((method, url, body, headers))
        replies = self.routes.get((method, url))
        if not replies:
            raise AssertionError(f"unexpected {method} {url}")
        reply = replies[0] if len(replies) == 1 else replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_image(fmt: str, mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (8, 8), color=(200, 30, 30) if mode == "RGB" else (200, 30, 30, 128)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image("JPEG")


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def fal_client(session):
    return FalClient(api_key="test-key", session=session, run_base=RUN_BASE, queue_base=QUEUE_BASE, timeout=5)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(fal_client, sleeps):
    return ExecutionEngine.from_client(fal_client, sleep=sleeps.append)


@pytest.fixture
def job_store(tmp_path):
    return JobStore(backend="local", local_dir=tmp_path)


@pytest.fixture
def object_store(tmp_path):
    return ObjectStore(backend="local", local_dir=tmp_path)


@pytest.fixture
def runner(job_store, object_store, engine):
    return JobRunner(job_store, object_store, engine)


@pytest.fixture
def project(job_store):
    return job_store.create_project(Project(id="proj-1", user_id="user-1", name="Fox"))


@pytest.fixture
def make_job(job_store, project):
    def _make(operation, payload=None, input_image_url=None, job_id="job-1", **extra):
        return job_store.create_job(Job(
            id=job_id,
            user_id="user-1",
            project_id=project.id,
            operation=operation,
            payload=payload or {},
            input_image_url=input_image_url,
            **extra,
        ))
    return _make
