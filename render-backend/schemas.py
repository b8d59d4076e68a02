"""
Pydantic models for data validation in the Storyboard Render Backend.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import RESOLUTIONS
from motion import MotionPattern


class Resolution(str, Enum):
    P720 = "720p"
    P1080 = "1080p"
    P1440 = "1440p"


class VideoFormat(str, Enum):
    LANDSCAPE = "landscape-16-9"
    PORTRAIT = "portrait-9-16"


class QualityTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MotionIntensity(str, Enum):
    SUBTLE = "subtle"
    MODERATE = "moderate"
    DRAMATIC = "dramatic"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class RenderSettings(BaseModel):
    """Settings fixed for the lifetime of one render job."""
    model_config = ConfigDict(frozen=True, use_enum_values=True, validate_default=True)

    resolution: Resolution = Resolution.P1080
    format: VideoFormat = VideoFormat.LANDSCAPE
    fps: int = Field(default=30, ge=24, le=60)
    quality: QualityTier = QualityTier.HIGH
    motion_intensity: MotionIntensity = MotionIntensity.MODERATE
    motion_pattern: Optional[MotionPattern] = None  # None rotates patterns per scene
    scene_range: Optional[Tuple[int, int]] = None

    @field_validator("scene_range")
    @classmethod
    def _check_scene_range(cls, value):
        if value is not None:
            start, end = value
            if start < 1 or end < start:
                raise ValueError("scene_range must be [start, end] with 1 <= start <= end")
        return value

    @property
    def frame_size(self) -> Tuple[int, int]:
        width, height = RESOLUTIONS[self.resolution]
        if self.format == VideoFormat.PORTRAIT.value:
            return height, width
        return width, height


class RenderRequest(BaseModel):
    """Request model for starting a render of a project."""
    project_id: int = Field(..., ge=1)
    settings: RenderSettings = Field(default_factory=RenderSettings)


class RenderSubmitResponse(BaseModel):
    """Response when submitting a background render job."""
    id: str
    status: str


class RenderJobResponse(BaseModel):
    """Current state of a render job."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: int
    status: str
    progress: int
    settings: dict
    output_url: Optional[str] = None
    file_size_bytes: Optional[int] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RenderListResponse(BaseModel):
    renders: List[RenderJobResponse]
