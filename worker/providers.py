"""fal.ai provider adapters.

Request builders turn a validated payload into a provider body. Every field
is sent twice, at the top level and nested under ``input``, because fal
models disagree on which of the two they read.
"""

import logging
import math
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel

from worker.fal_client import FalClient
from worker.queue_poller import QueuePoller
from worker.resolver import ResponseImageResolver

logger = logging.getLogger(__name__)

MIN_DIMENSION = 64
MAX_DIMENSION = 4096
DEFAULT_DIMENSION = 1024

MIN_UPSCALE = 1.0
MAX_UPSCALE = 4.0
DEFAULT_UPSCALE = 2.0

_TEXT_IS_PATTERN = re.compile(r"\btext\s+is\b", re.IGNORECASE)


def with_input_mirror(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {**fields, "input": dict(fields)}


def clamp_dimension(value: float, default: int = DEFAULT_DIMENSION) -> int:
    if not math.isfinite(value) or value <= 0:
        value = default
    return max(MIN_DIMENSION, min(MAX_DIMENSION, int(math.floor(value))))


def clamp_upscale_factor(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return DEFAULT_UPSCALE
    return max(MIN_UPSCALE, min(MAX_UPSCALE, float(value)))


def format_calligraphy_prompt(text: Optional[str]) -> str:
    """Phrase free text the way the calligrapher model expects.

    "Happy birthday" becomes "The text is 'Happy birthday'"; text that already
    says "... text is ..." is left alone, so applying this twice is a no-op.
    """
    raw = (text or "").strip()
    if raw and not _TEXT_IS_PATTERN.search(raw):
        return f"The text is '{raw}'"
    return raw


# ---------- Request builders ----------

def build_edit_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    return with_input_mirror({
        "prompt": payload.prompt,
        "image": input_url,
        "image_urls": [input_url],
    })


def build_elements_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    refs = [payload.reference_url]
    return with_input_mirror({
        "prompt": payload.prompt,
        "image": input_url,
        "image_url": input_url,
        "image_urls": [input_url, *refs],
        "reference_image_urls": refs,
    })


def build_calligrapher_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    return with_input_mirror({
        "prompt": format_calligraphy_prompt(payload.prompt),
        "image": input_url,
        "image_url": input_url,
        "image_urls": [input_url],
        "source_image_url": input_url,
        "auto_mask_generation": True,
    })


def build_reframe_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    # image_size object only; top-level width/height conflicts with it
    size = {"width": clamp_dimension(payload.width), "height": clamp_dimension(payload.height)}
    return with_input_mirror({
        "image": input_url,
        "image_url": input_url,
        "image_urls": [input_url],
        "source_image_url": input_url,
        "image_size": size,
    })


def build_character_remix_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    return with_input_mirror({
        "prompt": payload.prompt,
        "image": input_url,
        "image_url": input_url,
        "source_image_url": input_url,
        "reference_image_urls": list(payload.reference_urls),
    })


def build_text_to_image_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"prompt": payload.prompt}
    for key in ("negative_prompt", "aspect_ratio", "seed"):
        value = getattr(payload, key)
        if value is not None:
            fields[key] = value
    return with_input_mirror(fields)


def build_upscale_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "image_url": input_url,
        "upscale_factor": clamp_upscale_factor(payload.upscale_factor),
    }
    if payload.prompt:
        fields["prompt"] = payload.prompt
    return with_input_mirror(fields)


def build_inpaint_request(payload: BaseModel, input_url: Optional[str]) -> Dict[str, Any]:
    return with_input_mirror({
        "prompt": payload.prompt,
        "image_url": input_url,
        "mask_url": payload.mask_url,
    })


# ---------- Execution ----------

class ProviderAdapter:
    """Sends a built request to fal and returns the output image bytes.

    Synchronous operations are a single POST to fal.run whose reply goes
    straight to the resolver; queue-based ones are handed to the poller.
    """

    def __init__(self, client: FalClient, resolver: ResponseImageResolver, poller: QueuePoller):
        self.client = client
        self.resolver = resolver
        self.poller = poller

    @classmethod
    def from_client(cls, client: FalClient, **poller_kwargs) -> "ProviderAdapter":
        resolver = ResponseImageResolver(session=client.session, timeout=client.timeout)
        return cls(client, resolver, QueuePoller(client, resolver, **poller_kwargs))

    def execute(self, descriptor, body: Dict[str, Any]) -> bytes:
        if descriptor.queued:
            return self.poller.run(descriptor.endpoint, body, descriptor.name)

        logger.info(f"{descriptor.name}: calling {descriptor.endpoint}")
        response = self.client.post_json(self.client.run_url(descriptor.endpoint), body, descriptor.name)
        return self.resolver.resolve(response, descriptor.name)
