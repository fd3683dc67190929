"""Static operation descriptors: one per supported operation name.

Each descriptor pairs a typed payload model with the provider endpoint, the
request builder and the post-processing flags the worker needs.
"""

from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from common.errors import UnknownOperation, ValidationError
from common.imaging import PNG
from worker import providers


# ---------- Payload models ----------

class _Payload(BaseModel):
    # Payloads are open mappings; keys we don't use are ignored
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class EditPayload(_Payload):
    prompt: str = Field(min_length=1)


class ElementsPayload(_Payload):
    prompt: str = Field(min_length=1)
    reference_url: str = Field(min_length=1)


class ReframePayload(_Payload):
    width: float
    height: float


class CharacterRemixPayload(_Payload):
    prompt: str = Field(min_length=1)
    reference_urls: List[str] = Field(min_length=1)

    @field_validator("reference_urls", mode="before")
    @classmethod
    def _only_strings(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [u for u in v if isinstance(u, str) and u]
        return v


class TextToImagePayload(_Payload):
    prompt: str = Field(min_length=1)
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[str] = None
    seed: Optional[int] = None


class UpscalePayload(_Payload):
    # None falls through to the builder's default factor
    upscale_factor: Optional[float] = None
    prompt: Optional[str] = None

    @field_validator("upscale_factor", mode="before")
    @classmethod
    def _numeric_or_none(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None


class InpaintPayload(_Payload):
    prompt: str = Field(min_length=1)
    mask_url: str = Field(min_length=1)


# ---------- Descriptors ----------

@dataclass(frozen=True)
class OperationDescriptor:
    name: str
    display_name: str
    endpoint: str
    payload_model: Type[BaseModel]
    build_request: Callable[[BaseModel, Optional[str]], Dict[str, Any]]
    queued: bool = False
    requires_input_image: bool = True
    force_format: Optional[str] = None
    seeds_original_image: bool = False

    @property
    def required_fields(self) -> List[str]:
        fields = [name for name, f in self.payload_model.model_fields.items() if f.is_required()]
        if self.requires_input_image:
            fields.append("input_image_url")
        return fields


_DESCRIPTORS = [
    OperationDescriptor(
        name="nano_banana",
        display_name="Nano Banana",
        endpoint="fal-ai/nano-banana/edit",
        payload_model=EditPayload,
        build_request=providers.build_edit_request,
    ),
    OperationDescriptor(
        name="elements",
        display_name="Elements",
        endpoint="fal-ai/nano-banana/edit",
        payload_model=ElementsPayload,
        build_request=providers.build_elements_request,
    ),
    OperationDescriptor(
        name="calligrapher",
        display_name="Calligrapher",
        endpoint="fal-ai/calligrapher",
        payload_model=EditPayload,
        build_request=providers.build_calligrapher_request,
    ),
    OperationDescriptor(
        name="ideogram_v3_reframe",
        display_name="Ideogram Reframe",
        endpoint="fal-ai/ideogram/v3/reframe",
        payload_model=ReframePayload,
        build_request=providers.build_reframe_request,
    ),
    OperationDescriptor(
        name="ideogram_character_remix",
        display_name="Ideogram Character Remix",
        endpoint="fal-ai/ideogram/character/remix",
        payload_model=CharacterRemixPayload,
        build_request=providers.build_character_remix_request,
    ),
    OperationDescriptor(
        name="imagen4",
        display_name="Imagen4",
        endpoint="fal-ai/imagen4/preview",
        payload_model=TextToImagePayload,
        build_request=providers.build_text_to_image_request,
        queued=True,
        requires_input_image=False,
        seeds_original_image=True,
    ),
    OperationDescriptor(
        name="upscale",
        display_name="Upscale",
        endpoint="fal-ai/clarity-upscaler",
        payload_model=UpscalePayload,
        build_request=providers.build_upscale_request,
        queued=True,
    ),
    OperationDescriptor(
        name="inpaint",
        display_name="Inpaint",
        endpoint="fal-ai/flux-pro/v1/fill",
        payload_model=InpaintPayload,
        build_request=providers.build_inpaint_request,
        queued=True,
    ),
]

# Operations served by another operation's provider call. There is no
# dedicated background-removal endpoint yet; it runs the general edit.
OPERATION_ALIASES = {
    "remove_background": "nano_banana",
}

_ALIAS_OVERRIDES = {
    # PNG keeps the alpha channel the cut-out relies on
    "remove_background": {"display_name": "Remove Background", "force_format": PNG},
}


def _build_registry() -> Mapping[str, OperationDescriptor]:
    registry = {d.name: d for d in _DESCRIPTORS}
    for alias, target in OPERATION_ALIASES.items():
        registry[alias] = replace(registry[target], name=alias, **_ALIAS_OVERRIDES.get(alias, {}))
    return MappingProxyType(registry)


OPERATIONS = _build_registry()

_MISSING_ERROR_TYPES = {"missing", "string_too_short", "too_short"}


def get_operation(name: str, operations: Mapping[str, OperationDescriptor] = OPERATIONS) -> OperationDescriptor:
    descriptor = operations.get(name)
    if descriptor is None:
        raise UnknownOperation(name)
    return descriptor


def validate_payload(
    descriptor: OperationDescriptor,
    payload: Optional[Mapping[str, Any]],
    input_image_url: Optional[str],
) -> BaseModel:
    """Validate ``payload`` into the operation's model.

    Missing (or empty) required fields are reported together in a single
    ValidationError; nothing here touches the network.
    """
    missing: List[str] = []
    invalid: List[str] = []
    model = None

    try:
        model = descriptor.payload_model.model_validate(dict(payload or {}))
    except PydanticValidationError as e:
        for err in e.errors():
            loc = ".".join(str(p) for p in err["loc"])
            if err["type"] in _MISSING_ERROR_TYPES:
                missing.append(loc)
            else:
                invalid.append(f"{loc}: {err['msg']}")

    if descriptor.requires_input_image and not input_image_url:
        missing.append("input_image_url")

    if missing or invalid:
        raise ValidationError(descriptor.name, missing, detail="; ".join(invalid) or None)
    return model
