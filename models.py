# models.py

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, String, Text
from database import Base

JOB_STATUSES = ("initiating", "generating", "processing", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class VideoJob(Base):
    """Talking-video generation job, mutated only by the worker and the status poller."""

    __tablename__ = "video_jobs"

    id = Column(String, primary_key=True, index=True)
    status = Column(String, default="initiating", index=True)  # initiating, generating, processing, completed, failed
    image_url = Column(String(500), nullable=True)
    audio_url = Column(String(100), nullable=True)
    figure_id = Column(String, nullable=True, index=True)
    figure_name = Column(String, nullable=True)
    provider_job_id = Column(String, nullable=True)  # ditto request_id
    video_url = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CachedPortrait(Base):
    __tablename__ = "avatar_image_cache"

    id = Column(String, primary_key=True)
    figure_id = Column(String, unique=True, nullable=False, index=True)
    figure_name = Column(String, nullable=False)
    image_url = Column(String, nullable=False)
    visual_prompt = Column(Text, nullable=True)
    cache_version = Column(String, nullable=True)
    greeting_video_url = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class CachedScene(Base):
    __tablename__ = "scene_cache"

    id = Column(String, primary_key=True)
    scene_key = Column(String, unique=True, nullable=False, index=True)
    image_url = Column(String, nullable=False)
    figures = Column(Text, nullable=True)  # comma separated, sorted
    topic = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ClonedVoice(Base):
    __tablename__ = "cloned_voices"

    id = Column(String, primary_key=True)
    figure_id = Column(String, unique=True, nullable=False, index=True)
    figure_name = Column(String, nullable=False)
    voice_id = Column(String, nullable=False)
    voice_name = Column(String, nullable=False)
    provider = Column(String, nullable=True)
    source_url = Column(String, nullable=True)
    source_description = Column(Text, nullable=True)
    audio_quality_score = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
