"""
Cache rows for generated media: portraits, debate scenes and cloned voices.
Writes are upserts keyed on the figure / scene identifier, last writer wins.
"""

import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from config import DEFAULT_SCENE, PORTRAIT_CACHE_TTL_DAYS, SCENE_CACHE_TTL_DAYS
from errors import InputValidationError, NotFoundError
from models import CachedPortrait, CachedScene, ClonedVoice, utcnow

_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def upsert(db: Session, model, values: dict, key: str):
    """INSERT ... ON CONFLICT (key) DO UPDATE; the row id and created_at of the first write survive."""
    insert = _INSERTS.get(db.get_bind().dialect.name)
    row_values = {"id": str(uuid.uuid4()), **values}

    if insert is None:
        row = db.query(model).filter(getattr(model, key) == values[key]).first()
        if row is None:
            db.add(model(**row_values))
        else:
            for name, value in values.items():
                setattr(row, name, value)
    else:
        stmt = insert(model).values(**row_values)
        updates = {name: stmt.excluded[name] for name in values if name != key}
        db.execute(stmt.on_conflict_do_update(index_elements=[key], set_=updates))
    db.commit()
    return db.query(model).filter(getattr(model, key) == values[key]).one()


def is_fresh(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    return expires_at is None or expires_at > (now or utcnow())


def _expiry(ttl_days: Optional[int]) -> Optional[datetime]:
    if ttl_days is None:
        return None
    return utcnow() + timedelta(days=ttl_days)


# --- Portraits ---

def get_cached_portrait(db: Session, figure_id: str, cache_version: Optional[str] = None,
                        now: Optional[datetime] = None) -> Optional[CachedPortrait]:
    row = db.query(CachedPortrait).filter(CachedPortrait.figure_id == figure_id).first()
    if row is None or not is_fresh(row.expires_at, now):
        return None
    if cache_version is not None and row.cache_version != cache_version:
        return None
    return row


def cache_portrait(db: Session, figure_id: str, figure_name: str, image_url: str,
                   visual_prompt: Optional[str] = None, cache_version: Optional[str] = None,
                   ttl_days: Optional[int] = PORTRAIT_CACHE_TTL_DAYS) -> CachedPortrait:
    return upsert(db, CachedPortrait, {
        "figure_id": figure_id,
        "figure_name": figure_name,
        "image_url": image_url,
        "visual_prompt": visual_prompt,
        "cache_version": cache_version,
        "expires_at": _expiry(ttl_days),
    }, key="figure_id")


def set_greeting_video(db: Session, figure_id: str, greeting_video_url: str) -> CachedPortrait:
    if not figure_id or not greeting_video_url:
        raise InputValidationError("figureId and greetingVideoUrl are required")
    row = db.query(CachedPortrait).filter(CachedPortrait.figure_id == figure_id).first()
    if row is None:
        raise NotFoundError(f"No cached portrait for figure {figure_id}")
    row.greeting_video_url = greeting_video_url
    db.commit()
    logging.info(f"✅ Greeting video URL saved to cache for {figure_id}")
    return row


# --- Scenes ---

def _slug(value: str) -> str:
    return re.sub(r"\s+", "-", value.lower())


def build_scene_key(figures: Iterable[str], topic: Optional[str] = None,
                    scene: Optional[str] = None) -> str:
    """debate-<scene>-<topic slug>-<sorted figure slugs>"""
    figures = sorted(figures)
    if not figures:
        raise InputValidationError("figures array is required")
    topic_slug = re.sub(r"[^a-z0-9]+", "-", (topic or "").lower())[:30]
    return f"debate-{scene or DEFAULT_SCENE}-{topic_slug}-{'-'.join(_slug(f) for f in figures)}"


def get_cached_scene(db: Session, scene_key: str, now: Optional[datetime] = None) -> Optional[CachedScene]:
    row = db.query(CachedScene).filter(CachedScene.scene_key == scene_key).first()
    if row is None or not is_fresh(row.expires_at, now):
        return None
    return row


def cache_scene(db: Session, figures: List[str], image_url: str, topic: Optional[str] = None,
                scene: Optional[str] = None, ttl_days: Optional[int] = SCENE_CACHE_TTL_DAYS) -> CachedScene:
    return upsert(db, CachedScene, {
        "scene_key": build_scene_key(figures, topic, scene),
        "image_url": image_url,
        "figures": ",".join(sorted(figures)),
        "topic": topic,
        "expires_at": _expiry(ttl_days),
    }, key="scene_key")


# --- Cloned voices ---

def get_active_voice(db: Session, figure_id: str) -> Optional[ClonedVoice]:
    return (
        db.query(ClonedVoice)
        .filter(ClonedVoice.figure_id == figure_id, ClonedVoice.is_active.is_(True))
        .first()
    )


def save_cloned_voice(db: Session, figure_id: str, figure_name: str, voice_id: str, voice_name: str,
                      provider: Optional[str] = None, source_url: Optional[str] = None,
                      source_description: Optional[str] = None,
                      audio_quality_score: Optional[float] = None) -> ClonedVoice:
    return upsert(db, ClonedVoice, {
        "figure_id": figure_id,
        "figure_name": figure_name,
        "voice_id": voice_id,
        "voice_name": voice_name,
        "provider": provider,
        "source_url": source_url,
        "source_description": source_description,
        "audio_quality_score": audio_quality_score,
        "is_active": True,
        "updated_at": utcnow(),
    }, key="figure_id")


def purge_expired(db: Session, now: Optional[datetime] = None) -> dict:
    """Delete every cache row whose freshness window has passed."""
    now = now or utcnow()
    removed = {}
    for model in (CachedPortrait, CachedScene):
        removed[model.__tablename__] = (
            db.query(model)
            .filter(model.expires_at.isnot(None), model.expires_at <= now)
            .delete(synchronize_session=False)
        )
    db.commit()
    logging.info(f"🧹 Purged expired cache rows: {removed}")
    return removed
