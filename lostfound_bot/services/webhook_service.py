"""Service layer that turns platform webhook updates into runtime events."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from ..models import GeoPoint, InboundEvent, PhotoAttachment
from .flow_runtime import FlowRuntime

LOGGER = logging.getLogger(__name__)

_VCF_PHONE = re.compile(r"^TEL[^:]*:(.+)$", re.IGNORECASE | re.MULTILINE)


class WebhookService:
    """Parses ``message_created``, ``message_callback`` and ``bot_started`` updates."""

    def __init__(self, runtime: FlowRuntime) -> None:
        self._runtime = runtime

    def process_webhook(self, payload: Dict[str, Any]) -> int:
        updates = payload.get("updates") if isinstance(payload.get("updates"), list) else [payload]
        handled = 0
        for update in updates:
            event = self.parse_update(update)
            if event is None:
                LOGGER.debug("Ignoring update of type %s", update.get("update_type"))
                continue
            self._runtime.handle(event)
            handled += 1
        return handled

    def parse_update(self, update: Dict[str, Any]) -> Optional[InboundEvent]:
        update_type = update.get("update_type")
        if update_type == "message_created":
            return self._parse_message(update.get("message") or {})
        if update_type == "message_callback":
            return self._parse_callback(update)
        if update_type == "bot_started":
            user_id = (update.get("user") or {}).get("user_id")
            if user_id is None:
                return None
            return InboundEvent(kind=InboundEvent.STARTED, max_user_id=str(user_id))
        return None

    def _parse_message(self, message: Dict[str, Any]) -> Optional[InboundEvent]:
        user_id = (message.get("sender") or {}).get("user_id")
        if user_id is None:
            LOGGER.warning("Message without sender ignored")
            return None
        body = message.get("body") or {}
        photos, location, phone = self._parse_attachments(body.get("attachments") or [])
        return InboundEvent(
            kind=InboundEvent.MESSAGE,
            max_user_id=str(user_id),
            text=str(body.get("text") or ""),
            photos=photos,
            location=location,
            contact_phone=phone,
        )

    def _parse_callback(self, update: Dict[str, Any]) -> Optional[InboundEvent]:
        callback = update.get("callback") or {}
        user_id = (callback.get("user") or {}).get("user_id")
        if user_id is None:
            LOGGER.warning("Callback without user ignored")
            return None
        return InboundEvent(
            kind=InboundEvent.CALLBACK,
            max_user_id=str(user_id),
            callback_id=str(callback.get("callback_id") or ""),
            callback_payload=callback.get("payload"),
        )

    def _parse_attachments(
        self, attachments: List[Dict[str, Any]]
    ) -> Tuple[Tuple[PhotoAttachment, ...], Optional[GeoPoint], Optional[str]]:
        photos: List[PhotoAttachment] = []
        location: Optional[GeoPoint] = None
        phone: Optional[str] = None
        for attachment in attachments:
            if not isinstance(attachment, dict):
                continue
            kind = attachment.get("type")
            payload = attachment.get("payload") or {}
            if kind == "image" and payload:
                photo_id = payload.get("photo_id") or payload.get("token")
                if photo_id is None:
                    continue
                photos.append(PhotoAttachment(id=str(photo_id), url=payload.get("url"), token=payload.get("token")))
            elif kind == "location":
                location = self._parse_location(attachment)
            elif kind == "contact":
                phone = self._parse_phone(payload)
        return tuple(photos), location, phone

    @staticmethod
    def _parse_location(attachment: Dict[str, Any]) -> Optional[GeoPoint]:
        source = attachment if "latitude" in attachment else attachment.get("payload") or {}
        try:
            return GeoPoint(latitude=float(source["latitude"]), longitude=float(source["longitude"]))
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Malformed location attachment ignored")
            return None

    @staticmethod
    def _parse_phone(payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("tel"):
            return str(payload["tel"])
        match = _VCF_PHONE.search(str(payload.get("vcf_info") or ""))
        return match.group(1).strip() if match else None
