"""Flask application entry point for the lost and found bot."""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Flask, abort, request

from lostfound_bot.config import Settings
from lostfound_bot.database import Database
from lostfound_bot.flows.registry import build_registry
from lostfound_bot.repositories.chat_repository import ChatRepository
from lostfound_bot.repositories.listing_repository import ListingRepository
from lostfound_bot.repositories.notification_repository import NotificationRepository
from lostfound_bot.repositories.session_repository import SessionRepository
from lostfound_bot.repositories.user_repository import UserRepository
from lostfound_bot.services.bot_services import BotServices
from lostfound_bot.services.flow_runtime import FlowRuntime
from lostfound_bot.services.listing_publisher import ListingPublisher
from lostfound_bot.services.max_client import MaxClient
from lostfound_bot.services.notifier import Notifier
from lostfound_bot.services.owner_verification import OwnerVerification
from lostfound_bot.services.secret_vault import SecretVault
from lostfound_bot.services.webhook_service import WebhookService

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

settings = Settings.from_env()

database = Database(settings.database_path)
database.initialise()

max_client = MaxClient(settings.max_bot_token, settings.max_api_base, timeout=settings.http_timeout_seconds)
user_repository = UserRepository(database)
notification_repository = NotificationRepository(database)
services = BotServices(
    settings=settings,
    client=max_client,
    sessions=SessionRepository(database),
    users=user_repository,
    listings=ListingRepository(database),
    chats=ChatRepository(database),
    notifier=Notifier(notification_repository, user_repository, max_client),
    vault=SecretVault.from_setting(settings.secrets_key),
)
verification = OwnerVerification(services)
runtime = FlowRuntime(services, build_registry(verification, ListingPublisher(services)), verification)
webhook_service = WebhookService(runtime)

app = Flask(__name__)


@app.route("/health", methods=["GET"])
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.route("/webhook", methods=["GET"])
def webhook_check() -> Dict[str, Any]:
    return {"ok": True}


@app.route("/webhook", methods=["POST"])
def webhook() -> Dict[str, Any]:
    payload = request.get_json(silent=True) or {}
    try:
        handled = webhook_service.process_webhook(payload)
    except Exception:
        LOGGER.exception("Webhook processing failed")
        return {"ok": True, "error": "PROCESSING_FAILED"}
    app.logger.info("Webhook processed %d updates", handled)
    return {"ok": True}


@app.route("/users/<max_id>/notifications", methods=["GET"])
def notifications(max_id: str) -> Dict[str, Any]:
    limit_param = request.args.get("limit", "20")
    try:
        limit = max(1, min(int(limit_param), 100))
    except ValueError:
        abort(400, "limit must be numeric")
    include_archived = request.args.get("include_archived", "").lower() in ("1", "true", "yes")
    user = user_repository.find_by_max_id(max_id)
    if user is None:
        abort(404, "unknown user")
    items = notification_repository.list_for_user(user.id, limit=limit, include_archived=include_archived)
    return {
        "notifications": [
            {
                "id": item.id,
                "type": item.type,
                "status": item.status,
                "title": item.title,
                "body": item.body,
                "chat_id": item.chat_id,
                "listing_id": item.listing_id,
                "payload": item.payload,
                "created_at": item.created_at,
                "updated_at": item.updated_at,
            }
            for item in items
        ]
    }


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
