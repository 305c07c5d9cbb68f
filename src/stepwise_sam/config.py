"""Pipeline settings and their YAML loader."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError


@dataclass(frozen=True, slots=True, kw_only=True)
class PipelineSettings:
    """Knobs shared by the encoder, the decoder and the pipeline around them."""

    model_long_side: int = 1024
    # Steps per advance = total steps // step_divisor (at least 1).
    step_divisor: int = 5
    mask_input_size: int = 256
    # Encoder pixel range is [0, input_max].
    input_max: float = 255.0
    # Set for decoders that emit their rows bottom-up.
    flip_vertical: bool = False
    raster_workers: int = 1
    device: str = "auto"
    encoder_input: str = "input_image"
    encoder_output: str = "image_embeddings"
    decoder_output: str = "masks"


class _SettingsFile(BaseModel):
    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    model_long_side: int = Field(default=1024, gt=0)
    step_divisor: int = Field(default=5, ge=1)
    mask_input_size: int = Field(default=256, gt=0)
    input_max: float = Field(default=255.0, gt=0.0)
    flip_vertical: bool = False
    raster_workers: int = Field(default=1, ge=1)
    device: str = "auto"
    encoder_input: str = "input_image"
    encoder_output: str = "image_embeddings"
    decoder_output: str = "masks"


def settings_from_mapping(data: dict[str, Any]) -> PipelineSettings:
    """Validate a plain mapping into `PipelineSettings`."""
    try:
        parsed = _SettingsFile.model_validate(data)
    except ValidationError as e:
        raise RuntimeError(f"Invalid pipeline settings: {e}") from e
    return PipelineSettings(**parsed.model_dump())


def load_settings(path: Path) -> PipelineSettings:
    """Read pipeline settings from a YAML file; missing keys keep their defaults."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Settings file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise RuntimeError(f"Settings file must hold a mapping: {path}")
    return settings_from_mapping(data)
