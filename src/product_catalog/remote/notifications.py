from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from .data_service import DataService

logger = logging.getLogger(__name__)

EmailType = Literal["welcome", "enquiry", "enquiry-update", "password-changed"]


class EmailNotifier:
    """Fire-and-forget transactional email through the remote send-email function."""

    def __init__(self, service: DataService) -> None:
        self.service = service

    async def send(self, email_type: EmailType, to: str, **fields: Optional[Any]) -> bool:
        payload: dict[str, Any] = {"type": email_type, "to": to}
        payload.update({key: value for key, value in fields.items() if value is not None})
        try:
            result = await self.service.invoke_email(payload)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error sending %s email to %s: %s", email_type, to, exc)
            return False
        logger.info(
            "Email sent successfully: %s", result.get("id") if isinstance(result, dict) else result
        )
        return True

    async def send_welcome(self, to: str, user_name: str) -> bool:
        return await self.send("welcome", to, userName=user_name)

    async def send_enquiry(self, to: str, user_name: str, product_name: str, enquiry_id: int) -> bool:
        return await self.send(
            "enquiry", to, userName=user_name, productName=product_name, enquiryId=enquiry_id
        )

    async def send_enquiry_update(
        self, to: str, user_name: str, product_name: str, enquiry_id: int, new_status: str
    ) -> bool:
        return await self.send(
            "enquiry-update",
            to,
            userName=user_name,
            productName=product_name,
            enquiryId=enquiry_id,
            newStatus=new_status,
        )

    async def send_password_changed(self, to: str, user_name: str) -> bool:
        return await self.send("password-changed", to, userName=user_name)
