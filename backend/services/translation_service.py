"""
Cache de traductions des notifications (collection translation_cache).
Clé : "<langue>_<message_key>". Alimenté par l'admin ou un traducteur externe.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from database import db

logger = logging.getLogger(__name__)


def _cache_key(message_key: str, language: str) -> str:
    return f"{language}_{message_key}"


async def get_cached_translation(message_key: str, language: str) -> Optional[str]:
    doc = await db.translation_cache.find_one(
        {"cache_key": _cache_key(message_key, language)}, {"_id": 0, "translation": 1}
    )
    return doc.get("translation") if doc else None


async def store_translation(message_key: str, language: str, translation: str) -> None:
    await db.translation_cache.update_one(
        {"cache_key": _cache_key(message_key, language)},
        {"$set": {
            "message_key": message_key,
            "language":    language,
            "translation": translation,
            "updated_at":  datetime.now(timezone.utc),
        }},
        upsert=True,
    )
    logger.info(f"Traduction mise en cache : {language}/{message_key}")
