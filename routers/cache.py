"""
Router for the generated-media caches: portraits, greeting videos,
debate scenes and cloned voices.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import cache
from database import get_db
from errors import InputValidationError, NotFoundError
from schemas import (
    ClonedVoiceRequest,
    GreetingVideoRequest,
    PortraitCacheRequest,
    PortraitResponse,
    SceneCacheRequest,
    VoiceResponse,
)

router = APIRouter(tags=["cache"])


@router.get("/cache/portraits/{figure_id}")
def get_portrait(figure_id: str, cache_version: Optional[str] = None, db: Session = Depends(get_db)):
    row = cache.get_cached_portrait(db, figure_id, cache_version=cache_version)
    if row is None:
        return {"cached": False}
    logging.info(f"✅ Using cached portrait for {row.figure_name}")
    return {"cached": True, "portrait": PortraitResponse.model_validate(row)}


@router.put("/cache/portraits/{figure_id}")
def put_portrait(figure_id: str, request: PortraitCacheRequest, db: Session = Depends(get_db)):
    # the portrait was already generated, a failed cache write must not lose it
    try:
        cache.cache_portrait(db, figure_id, request.figure_name, request.image_url,
                             visual_prompt=request.visual_prompt, cache_version=request.cache_version)
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Failed to cache portrait for {figure_id}: {e}")
        return {"cached": False, "imageUrl": request.image_url}
    logging.info(f"💾 Portrait cached for {request.figure_name}")
    return {"cached": True, "imageUrl": request.image_url}


@router.post("/update-greeting-video")
def update_greeting_video(request: GreetingVideoRequest, db: Session = Depends(get_db)):
    cache.set_greeting_video(db, request.figure_id, request.greeting_video_url)
    return {"success": True}


@router.post("/cache/scenes/lookup")
def lookup_scene(request: SceneCacheRequest, db: Session = Depends(get_db)):
    scene_key = cache.build_scene_key(request.figures, request.topic, request.scene)
    row = cache.get_cached_scene(db, scene_key)
    if row is None:
        return {"cached": False, "sceneKey": scene_key}
    logging.info(f"✅ Using cached debate scene: {scene_key}")
    return {"cached": True, "sceneKey": scene_key, "imageUrl": row.image_url}


@router.put("/cache/scenes")
def put_scene(request: SceneCacheRequest, db: Session = Depends(get_db)):
    if not request.image_url:
        raise InputValidationError("imageUrl is required")
    scene_key = cache.build_scene_key(request.figures, request.topic, request.scene)
    try:
        cache.cache_scene(db, request.figures, request.image_url, topic=request.topic, scene=request.scene)
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Failed to cache debate scene {scene_key}: {e}")
        return {"cached": False, "sceneKey": scene_key, "imageUrl": request.image_url}
    return {"cached": True, "sceneKey": scene_key, "imageUrl": request.image_url}


@router.get("/cache/voices/{figure_id}", response_model=VoiceResponse)
def get_voice(figure_id: str, db: Session = Depends(get_db)):
    voice = cache.get_active_voice(db, figure_id)
    if voice is None:
        raise NotFoundError(f"No cloned voice for figure {figure_id}")
    return voice


@router.put("/cache/voices/{figure_id}", response_model=VoiceResponse)
def put_voice(figure_id: str, request: ClonedVoiceRequest, db: Session = Depends(get_db)):
    voice = cache.save_cloned_voice(
        db, figure_id, request.figure_name, request.voice_id, request.voice_name,
        provider=request.provider, source_url=request.source_url,
        source_description=request.source_description,
        audio_quality_score=request.audio_quality_score,
    )
    logging.info(f"🎙️ Cloned voice saved for {request.figure_name}")
    return voice


@router.delete("/cache/expired")
def cleanup_expired(db: Session = Depends(get_db)):
    return {"removed": cache.purge_expired(db)}
