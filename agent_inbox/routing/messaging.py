"""Outbound WhatsApp messages: re-engagement templates and automatic replies."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Protocol

import requests

from ..core.config import InboxSettings, get_inbox_settings
from .errors import MessagingError


class MessagingDispatcher(Protocol):
    def send_template_message(
        self, contact_id: str, template_id: str, params: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Send ``template_id`` to ``contact_id`` and return ``{"messageId": ...}``."""

    def send_text_message(self, contact_id: str, text: str) -> dict[str, Any]:
        """Send a free-form text reply to ``contact_id``."""


class WhatsAppTemplateDispatcher:
    """Send templates and text replies through the WhatsApp Cloud API."""

    channel_name = "whatsapp"

    def __init__(
        self,
        settings: InboxSettings | None = None,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings or get_inbox_settings()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def _recipient(self, contact_id: str) -> dict[str, Any]:
        digits = re.sub(r"\D", "", contact_id)
        if not digits:
            raise MessagingError(f"Contact id {contact_id!r} is not a phone number")
        return {"messaging_product": "whatsapp", "recipient_type": "individual", "to": digits}

    def build_payload(
        self, contact_id: str, template_id: str, params: Mapping[str, Any]
    ) -> dict[str, Any]:
        body_parameters = [
            {"type": "text", "text": str(value)} for value in params.get("body", [])
        ]
        template: dict[str, Any] = {
            "name": template_id,
            "language": {
                "policy": "deterministic",
                "code": params.get("language") or self.settings.whatsapp_template_language,
            },
        }
        if body_parameters:
            template["components"] = [{"type": "body", "parameters": body_parameters}]
        return {**self._recipient(contact_id), "type": "template", "template": template}

    def build_text_payload(self, contact_id: str, text: str) -> dict[str, Any]:
        if not text.strip():
            raise MessagingError("Refusing to send an empty text message")
        return {**self._recipient(contact_id), "type": "text", "text": {"body": text}}

    def send_template_message(
        self, contact_id: str, template_id: str, params: Mapping[str, Any]
    ) -> dict[str, Any]:
        return self._post(self.build_payload(contact_id, template_id, params))

    def send_text_message(self, contact_id: str, text: str) -> dict[str, Any]:
        return self._post(self.build_text_payload(contact_id, text))

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        token = self.settings.whatsapp_token
        phone_number_id = self.settings.whatsapp_phone_number_id
        if not token or not phone_number_id:
            raise MessagingError("WhatsApp credentials are not configured")

        url = f"{self.settings.whatsapp_api_url.rstrip('/')}/{phone_number_id}/messages"
        try:
            response = self.session.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            self.logger.warning("WhatsApp %s send failed: %s", payload.get("type"), exc)
            raise MessagingError(f"WhatsApp request failed: {exc}") from exc
        except ValueError as exc:
            raise MessagingError("WhatsApp returned a non-JSON response") from exc

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise MessagingError("WhatsApp response did not include a message id")
        return {"messageId": message_id}


__all__ = ["MessagingDispatcher", "WhatsAppTemplateDispatcher"]
