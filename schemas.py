"""
Pydantic models for request validation in the Talking Figures backend.
Request fields accept both camelCase and snake_case names.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _either(camel: str, snake: str):
    return Field(default=None, validation_alias=AliasChoices(camel, snake))


class VideoActionRequest(BaseModel):
    """Body of the ditto-generate-video endpoint; `action` picks the mode."""
    action: Literal["start", "status"] = "start"
    image_url: Optional[str] = _either("imageUrl", "image_url")
    audio_url: Optional[str] = _either("audioUrl", "audio_url")
    figure_id: Optional[str] = _either("figureId", "figure_id")
    figure_name: Optional[str] = _either("figureName", "figure_name")
    job_id: Optional[str] = _either("jobId", "job_id")


class StitchRequest(BaseModel):
    """Ordered chunk video URLs to merge into one video."""
    video_urls: List[str] = Field(default_factory=list, validation_alias=AliasChoices("videoUrls", "video_urls"))


class PortraitCacheRequest(BaseModel):
    figure_name: str = Field(validation_alias=AliasChoices("figureName", "figure_name"))
    image_url: str = Field(validation_alias=AliasChoices("imageUrl", "image_url"))
    visual_prompt: Optional[str] = _either("visualPrompt", "visual_prompt")
    cache_version: Optional[str] = _either("cacheVersion", "cache_version")


class GreetingVideoRequest(BaseModel):
    figure_id: Optional[str] = _either("figureId", "figure_id")
    greeting_video_url: Optional[str] = _either("greetingVideoUrl", "greeting_video_url")


class SceneCacheRequest(BaseModel):
    figures: List[str] = Field(default_factory=list)
    topic: Optional[str] = None
    scene: Optional[str] = None
    image_url: Optional[str] = _either("imageUrl", "image_url")


class ClonedVoiceRequest(BaseModel):
    figure_name: str = Field(validation_alias=AliasChoices("figureName", "figure_name"))
    voice_id: str = Field(validation_alias=AliasChoices("voiceId", "voice_id"))
    voice_name: str = Field(validation_alias=AliasChoices("voiceName", "voice_name"))
    provider: Optional[str] = None
    source_url: Optional[str] = _either("sourceUrl", "source_url")
    source_description: Optional[str] = _either("sourceDescription", "source_description")
    audio_quality_score: Optional[float] = _either("audioQualityScore", "audio_quality_score")


class PortraitResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    figure_id: str
    figure_name: str
    image_url: str
    visual_prompt: Optional[str] = None
    cache_version: Optional[str] = None
    greeting_video_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class VoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    figure_id: str
    figure_name: str
    voice_id: str
    voice_name: str
    provider: Optional[str] = None
    audio_quality_score: Optional[float] = None
    is_active: Optional[bool] = None
