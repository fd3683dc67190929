"""Pulls output image bytes out of provider responses.

Providers (and the same provider under sync vs. queued delivery) disagree on
the envelope, so extraction is an ordered list of small strategies. Each one
looks at the raw JSON and returns an ``ImageRef`` or None; the first hit wins.
"""

import base64
import logging
from typing import Any, Callable, List, NamedTuple, Optional

import requests

from common.errors import ImageFetchError, MissingImageError

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:"


class ImageRef(NamedTuple):
    url: Optional[str] = None     # needs a follow-up GET
    data: Optional[bytes] = None  # already decoded


def _first_image_url(images: Any) -> Optional[str]:
    if isinstance(images, list) and images and isinstance(images[0], dict):
        url = images[0].get("url")
        if isinstance(url, str) and url:
            return url
    return None


def from_images_list(response: dict) -> Optional[ImageRef]:
    url = _first_image_url(response.get("images"))
    return ImageRef(url=url) if url else None


def from_image_object(response: dict) -> Optional[ImageRef]:
    image = response.get("image")
    if isinstance(image, dict):
        url = image.get("url")
        if isinstance(url, str) and url:
            return ImageRef(url=url)
    return None


def from_inline_data(response: dict) -> Optional[ImageRef]:
    image = response.get("image")
    if isinstance(image, str) and image.startswith(DATA_URL_PREFIX):
        _, _, payload = image.partition(",")
        return ImageRef(data=base64.b64decode(payload))
    return None


def from_data_envelope(response: dict) -> Optional[ImageRef]:
    data = response.get("data")
    if isinstance(data, dict):
        url = _first_image_url(data.get("images"))
        if url:
            return ImageRef(url=url)
    return None


STRATEGIES: List[Callable[[dict], Optional[ImageRef]]] = [
    from_images_list,
    from_image_object,
    from_inline_data,
    from_data_envelope,
]


def find_image(response: Any) -> Optional[ImageRef]:
    if not isinstance(response, dict):
        return None
    for strategy in STRATEGIES:
        ref = strategy(response)
        if ref is not None:
            return ref
    return None


class ResponseImageResolver:
    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 120):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, url: str) -> bytes:
        resp = self.session.get(url, timeout=self.timeout)
        if not resp.ok:
            raise ImageFetchError(resp.status_code, url)
        return resp.content

    def resolve(self, response: Any, operation: str) -> bytes:
        ref = find_image(response)
        if ref is None:
            raise MissingImageError(operation)
        if ref.data is not None:
            logger.debug(f"{operation}: decoded inline image ({len(ref.data)} bytes)")
            return ref.data
        logger.debug(f"{operation}: fetching output image {ref.url}")
        return self.fetch(ref.url)
