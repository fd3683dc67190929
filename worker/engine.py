import logging
from typing import Any, Mapping, Optional

from common.errors import ExecutionFailure, MissingImageError
from common.imaging import OutputArtifact
from worker.fal_client import FalClient
from worker.operations import OPERATIONS, OperationDescriptor, get_operation, validate_payload
from worker.providers import ProviderAdapter

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """Runs one operation and returns its output artifact.

    Whatever goes wrong (unknown operation, bad payload, provider or polling
    failure) surfaces as a single ExecutionFailure whose message is the
    original error text.
    """

    def __init__(self, adapter: ProviderAdapter, operations: Mapping[str, OperationDescriptor] = OPERATIONS):
        self.adapter = adapter
        self.operations = operations

    @classmethod
    def from_client(cls, client: Optional[FalClient] = None, **poller_kwargs) -> "ExecutionEngine":
        return cls(ProviderAdapter.from_client(client or FalClient(), **poller_kwargs))

    def describe(self, operation: str) -> OperationDescriptor:
        return get_operation(operation, self.operations)

    def run(
        self,
        operation: str,
        payload: Optional[Mapping[str, Any]],
        input_image_url: Optional[str] = None,
    ) -> OutputArtifact:
        try:
            descriptor = self.describe(operation)
            typed_payload = validate_payload(descriptor, payload, input_image_url)
            body = descriptor.build_request(typed_payload, input_image_url)
            mode = "queue" if descriptor.queued else "sync"
            logger.info(f"Running {operation} via {descriptor.endpoint} ({mode})")
            data = self.adapter.execute(descriptor, body)
            if not data:
                raise MissingImageError(operation)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"{operation} failed: {message}")
            raise ExecutionFailure(operation, message) from e

        artifact = OutputArtifact.from_bytes(data)
        logger.info(f"{operation} produced {artifact.format} output ({len(data)} bytes)")
        return artifact
