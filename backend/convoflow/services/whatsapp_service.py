# /convoflow/services/whatsapp_service.py

import logging
import re
from typing import Any, Dict, List, Optional

import httpx
import tenacity

from convoflow.config.settings import settings
from convoflow.flows.errors import ChannelGatewayError
from convoflow.flows.interfaces import ChannelGateway
from convoflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

# WhatsApp Cloud API field limits
MAX_TEXT_LENGTH = 4096
MAX_CAPTION_LENGTH = 1024
MAX_HEADER_LENGTH = 60
MAX_FOOTER_LENGTH = 60
MAX_LIST_BUTTON_LENGTH = 20
MAX_ROW_TITLE_LENGTH = 24
MAX_ROW_DESCRIPTION_LENGTH = 72
MAX_SECTION_TITLE_LENGTH = 24

# One breaker per phone number id, shared by every service instance of the process.
_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(phone_id: str) -> CircuitBreaker:
    if phone_id not in _circuit_breakers:
        _circuit_breakers[phone_id] = CircuitBreaker(f"whatsapp:{phone_id}", tracked_exceptions=(httpx.HTTPError,))
    return _circuit_breakers[phone_id]


def clean_phone_number(phone: str) -> str:
    clean_phone = re.sub(r"[^\d+]", "", phone or "")
    if clean_phone and not clean_phone.startswith("+"):
        clean_phone = "+" + clean_phone
    return clean_phone


class WhatsAppService(ChannelGateway):
    """
    WhatsApp Cloud API client for one business phone number.

    Every send returns the WhatsApp message id (wamid). Transport errors are
    retried; a non-2xx answer or an exhausted retry raises ChannelGatewayError.
    """

    def __init__(
        self,
        access_token: str,
        phone_id: str,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        list_button_text: Optional[str] = None,
    ):
        self.access_token = access_token
        self.phone_id = phone_id
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.base_url = base_url or settings.whatsapp_base_url
        self.list_button_text = list_button_text or settings.interactive_list_button_text
        self.circuit_breaker = get_circuit_breaker(phone_id)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.phone_id}/messages"

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send_whatsapp_request(self, payload: Dict[str, Any]) -> Optional[str]:
        """Posts a payload to the messages endpoint and returns the message id."""
        to_phone = payload.get("to")
        if not to_phone:
            raise ChannelGatewayError("WhatsApp message has no recipient")

        try:
            response = await self.resilient_api_call(
                self.http_client.post, self.messages_url, json=payload, headers=self.headers
            )
        except CircuitOpenError as e:
            raise ChannelGatewayError(str(e)) from e
        except httpx.HTTPError as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}")
            raise ChannelGatewayError(f"WhatsApp request failed: {e}") from e

        if not response.is_success:
            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            raise ChannelGatewayError(
                f"WhatsApp API returned {response.status_code}: {error_message}",
                status_code=response.status_code,
            )

        message_id = (response.json().get("messages") or [{}])[0].get("id")
        logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
        return message_id

    def _base_payload(self, address: str, message_type: str) -> Dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": clean_phone_number(address),
            "type": message_type,
        }

    # ==================== ChannelGateway ====================

    async def send_text(self, address: str, text: str) -> Optional[str]:
        payload = self._base_payload(address, "text")
        payload["text"] = {"body": text[:MAX_TEXT_LENGTH]}
        return await self.send_whatsapp_request(payload)

    async def send_image(self, address: str, url: str, caption: Optional[str] = None) -> Optional[str]:
        payload = self._base_payload(address, "image")
        payload["image"] = {"link": url}
        if caption:
            payload["image"]["caption"] = caption[:MAX_CAPTION_LENGTH]
        return await self.send_whatsapp_request(payload)

    async def send_buttons(
        self,
        address: str,
        text: str,
        buttons: List[Dict[str, str]],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> Optional[str]:
        interactive: Dict[str, Any] = {
            "type": "button",
            "body": {"text": text[:MAX_TEXT_LENGTH]},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button["id"], "title": button["title"]}}
                    for button in buttons
                ]
            },
        }
        if header:
            interactive["header"] = {"type": "text", "text": header[:MAX_HEADER_LENGTH]}
        if footer:
            interactive["footer"] = {"text": footer[:MAX_FOOTER_LENGTH]}

        payload = self._base_payload(address, "interactive")
        payload["interactive"] = interactive
        return await self.send_whatsapp_request(payload)

    async def send_interactive_list(
        self,
        address: str,
        header: str,
        body: str,
        footer: Optional[str],
        sections: List[Dict[str, Any]],
    ) -> Optional[str]:
        list_sections = [
            {
                "title": section["title"][:MAX_SECTION_TITLE_LENGTH],
                "rows": [
                    {
                        "id": row["id"],
                        "title": row["title"][:MAX_ROW_TITLE_LENGTH],
                        "description": (row.get("description") or "")[:MAX_ROW_DESCRIPTION_LENGTH],
                    }
                    for row in section["rows"]
                ],
            }
            for section in sections
        ]
        interactive: Dict[str, Any] = {
            "type": "list",
            "header": {"type": "text", "text": header[:MAX_HEADER_LENGTH]},
            "body": {"text": body[:MAX_TEXT_LENGTH]},
            "action": {"button": self.list_button_text[:MAX_LIST_BUTTON_LENGTH], "sections": list_sections},
        }
        if footer:
            interactive["footer"] = {"text": footer[:MAX_FOOTER_LENGTH]}

        payload = self._base_payload(address, "interactive")
        payload["interactive"] = interactive
        return await self.send_whatsapp_request(payload)

    # ==================== Webhook helpers ====================

    async def mark_as_read(self, message_id: str) -> bool:
        """Marks an inbound message as read. Failures are logged only."""
        payload = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        try:
            response = await self.http_client.post(self.messages_url, json=payload, headers=self.headers)
            if response.is_success:
                return True
            logger.warning(f"whatsapp_mark_as_read_failed for {message_id}: {response.status_code} - {response.text}")
        except httpx.HTTPError as e:
            logger.warning(f"whatsapp_mark_as_read_error for {message_id}: {e}")
        return False
