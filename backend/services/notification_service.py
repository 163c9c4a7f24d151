"""
Service notification : message localisé, stockage in-app, push FCM.

Best-effort : aucune fonction publique ne lève. Les services métier appellent
`dispatch()` qui planifie l'envoi sans attendre (fire-and-forget).
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging

from config import settings
from core.utils import new_id
from database import db
from models.notification import NotificationChannel, NotificationStatus
from services.translation_service import get_cached_translation

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

MESSAGES = {
    "bid_placed": {
        "en": "Your bid has been placed with estimated pickup & dropoff details.",
        "ar": "تم تقديم عرضك بنجاح مع تقديرات زمن ومسافة الاستلام والتسليم.",
    },
    "bid_received": {
        "en": "A new bid has been placed.",
        "ar": "تم تقديم عرض جديد.",
    },
    "bid_accepted": {
        "en": "Your bid has been accepted. Your pickup PIN is: {pickup_pin}",
        "ar": "تم قبول عرضك. رقم الاستلام الخاص بك هو: {pickup_pin}",
    },
    "bid_expired": {
        "en": "Your bid has expired as the order has reached the required number of couriers.",
        "ar": "انتهى عرضك لأن الطلب بلغ العدد المطلوب من السائقين.",
    },
    "order_active": {
        "en": "Enough couriers have been accepted. Your order is now active!",
        "ar": "تم قبول العدد المطلوب من السائقين. طلبك الآن نشط!",
    },
    "primary_courier": {
        "en": "You are the primary courier for this order.",
    },
    "pickup_confirmed": {
        "en": "Your package has been picked up.",
    },
    "dropoff_confirmed": {
        "en": "Your package has been delivered.",
    },
    "order_finalized": {
        "en": "Order settled. Your fee: {courier_fee}.",
    },
    "order_cancelled": {
        "en": "The order you bid on has been cancelled.",
    },
}

_firebase_ready: Optional[bool] = None
_pending: set[asyncio.Task] = set()


def _firebase_enabled() -> bool:
    """Initialise Firebase Admin au premier push, si un compte de service est configuré."""
    global _firebase_ready
    if _firebase_ready is None:
        _firebase_ready = False
        cred_path = settings.FIREBASE_CREDENTIALS
        if cred_path and os.path.exists(cred_path):
            try:
                firebase_admin.initialize_app(credentials.Certificate(cred_path))
                _firebase_ready = True
            except (ValueError, OSError) as e:
                logger.error(f"Erreur initialisation Firebase Admin: {e}")
    return _firebase_ready


async def localize(message_key: str, language: str, params: Optional[dict] = None) -> str:
    """Variante de la langue, sinon cache de traduction, sinon anglais."""
    variants = MESSAGES.get(message_key, {})
    template = variants.get(language)
    if template is None and language != DEFAULT_LANGUAGE:
        template = await get_cached_translation(message_key, language)
    if template is None:
        template = variants.get(DEFAULT_LANGUAGE, message_key)
    try:
        return template.format(**(params or {}))
    except (KeyError, IndexError):
        return template


async def notify(
    user_id: str,
    message_key: str,
    params: Optional[dict] = None,
    ref_type: Optional[str] = None,
    ref_id: Optional[str] = None,
) -> None:
    """Stocke la notification en base et tente le push."""
    try:
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "language": 1, "fcm_token": 1})
        language = (user or {}).get("language") or DEFAULT_LANGUAGE
        body = await localize(message_key, language, params)

        now = datetime.now(timezone.utc)
        await db.notifications.insert_one({
            "notif_id":    new_id("ntf"),
            "user_id":     user_id,
            "channel":     NotificationChannel.IN_APP.value,
            "message_key": message_key,
            "language":    language,
            "body":        body,
            "status":      NotificationStatus.SENT.value,
            "metadata":    params or {},
            "ref_type":    ref_type,
            "ref_id":      ref_id,
            "created_at":  now,
            "sent_at":     now,
            "read_at":     None,
        })

        fcm_token = (user or {}).get("fcm_token")
        if fcm_token and _firebase_enabled():
            message = messaging.Message(
                notification=messaging.Notification(title="Badr", body=body),
                data={"ref_type": ref_type or "", "ref_id": ref_id or ""},
                token=fcm_token,
            )
            await asyncio.to_thread(messaging.send, message)
            logger.info(f"Push FCM envoyé à {user_id}")
    except Exception as e:
        logger.warning(f"Notification '{message_key}' non délivrée à {user_id}: {e}")


def dispatch(user_id: str, message_key: str, **kwargs) -> None:
    """Planifie notify() sans bloquer l'appelant."""
    task = asyncio.create_task(notify(user_id, message_key, **kwargs))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain() -> None:
    """Attend les notifications en vol (arrêt propre, tests)."""
    while _pending:
        await asyncio.gather(*list(_pending))
