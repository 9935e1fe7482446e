from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

MAX_DIMENSION = 8000


class OutputFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"

    @property
    def content_type(self) -> str:
        return f"image/{self.value}"


class FitMode(str, Enum):
    COVER = "cover"
    CONTAIN = "contain"


class PipelineStage(str, Enum):
    ADMITTED = "admitted"
    SOURCE_VALIDATED = "source_validated"
    OUTPUTS_NORMALIZED = "outputs_normalized"
    RENDERING = "rendering"
    RESPONDING = "responding"


class OutputSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = Field(ge=1, le=MAX_DIMENSION)
    height: int = Field(ge=1, le=MAX_DIMENSION)
    format: OutputFormat

    @property
    def key(self) -> Tuple[int, int, OutputFormat]:
        return (self.width, self.height, self.format)

    def describe(self) -> str:
        return f"{self.width}x{self.height}.{self.format.value}"


class RenderOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    maintain_aspect: bool = True
    fit: FitMode = FitMode.COVER
    jpeg_quality: int = 85
    webp_quality: int = 80


@dataclass(frozen=True)
class RenderResult:
    filename: str
    data: bytes
    content_type: str


class HealthStatus(BaseModel):
    status: str = "ok"


class ResizeDefaults(BaseModel):
    formats: List[str]
    fit_modes: List[str]
    max_dimension: int
    default_jpeg_quality: int
    default_webp_quality: int
    max_upload_bytes: int
    admission: Dict[str, int]
    auth_required: bool
    notes: Dict[str, str]
