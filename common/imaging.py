"""Output artifact helpers: magic-byte format sniffing and Pillow re-encoding."""

import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

PNG = "png"
JPEG = "jpeg"

PNG_MAGIC = b"\x89PNG"
JPEG_MAGIC = b"\xff\xd8\xff"

CONTENT_TYPES = {PNG: "image/png", JPEG: "image/jpeg"}
EXTENSIONS = {PNG: "png", JPEG: "jpg"}
PIL_FORMATS = {PNG: "PNG", JPEG: "JPEG"}


def detect_format(data: bytes) -> str:
    """PNG or JPEG by magic bytes; anything unrecognised is treated as JPEG."""
    if data[:4] == PNG_MAGIC:
        return PNG
    if data[:3] == JPEG_MAGIC:
        return JPEG
    return JPEG


@dataclass(frozen=True)
class OutputArtifact:
    data: bytes
    format: str

    @classmethod
    def from_bytes(cls, data: bytes) -> "OutputArtifact":
        return cls(data=data, format=detect_format(data))

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.format]

    @property
    def extension(self) -> str:
        return EXTENSIONS[self.format]

    def encoded_as(self, fmt: Optional[str]) -> "OutputArtifact":
        """Return an artifact stored as ``fmt``.

        The artifact itself is never mutated; a re-encoded copy is returned
        when the requested format differs from the detected one. Bytes Pillow
        cannot decode are kept as they are and only relabelled.
        """
        if fmt is None or fmt == self.format:
            return self

        try:
            with Image.open(io.BytesIO(self.data)) as img:
                img.load()
                if fmt == JPEG and img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                elif fmt == PNG and img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                    img = img.convert("RGBA")
                buf = io.BytesIO()
                img.save(buf, format=PIL_FORMATS[fmt])
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Could not re-encode {self.format} output as {fmt}, storing original bytes: {e}")
            return OutputArtifact(data=self.data, format=fmt)

        logger.debug(f"Re-encoded artifact {self.format} -> {fmt} ({len(self.data)} -> {buf.tell()} bytes)")
        return OutputArtifact(data=buf.getvalue(), format=fmt)
