"""MAX messenger bot API client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from ..errors import TransportError
from ..models import Button, Keyboard

LOGGER = logging.getLogger(__name__)


def keyboard_attachment(buttons: Keyboard) -> Dict[str, Any]:
    rows: List[List[Dict[str, Any]]] = []
    for row in buttons:
        rendered: List[Dict[str, Any]] = []
        for button in row:
            rendered.append(_render_button(button))
        if rendered:
            rows.append(rendered)
    return {"type": "inline_keyboard", "payload": {"buttons": rows}}


def _render_button(button: Button) -> Dict[str, Any]:
    if button.kind == "link":
        return {"type": "link", "text": button.text, "url": button.url}
    if button.kind == "request_contact":
        return {"type": "request_contact", "text": button.text}
    return {"type": "callback", "text": button.text, "payload": button.payload}


class MaxClient:
    """Small wrapper around the MAX bot HTTP API."""

    def __init__(self, token: str, api_base: str, *, timeout: int = 15) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def send_message(self, user_id: str, text: str, buttons: Optional[Keyboard] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": text}
        if buttons:
            payload["attachments"] = [keyboard_attachment(buttons)]
        return self._post("/messages", {"user_id": user_id}, payload)

    def answer_callback(self, callback_id: str, notification: str) -> Dict[str, Any]:
        return self._post("/answers", {"callback_id": callback_id}, {"notification": notification})

    def _post(self, path: str, params: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._api_base}{path}"
        headers = {
            "Authorization": self._token,
            "Content-Type": "application/json",
        }
        LOGGER.debug("Sending MAX payload to %s: %s", path, payload)
        try:
            response = requests.post(url, params=params, json=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            LOGGER.error("MAX API request to %s failed: %s", path, exc)
            raise TransportError(f"MAX API request to {path} failed") from exc
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            LOGGER.error("MAX API error: %s | Response: %s", exc, response.text)
            raise TransportError(f"MAX API answered {response.status_code} for {path}") from exc
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}
