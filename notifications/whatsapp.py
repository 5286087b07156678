"""
WhatsApp notifications for MTF Sentinel Trader.
Sends four-line template messages for entries, trailing level changes and exits.

Delivery is best effort: a failed notification is logged and never
interrupts trading.
"""

import logging
import re
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any

import httpx

from config import Config

logger = logging.getLogger(__name__)

IST = timezone(timedelta(hours=5, minutes=30))
TEMPLATE_PARAMETER_COUNT = 4


def format_phone_number(phone_number: str) -> str:
    """Digits only, with the India country code added to bare 10-digit numbers."""
    cleaned = re.sub(r"\D", "", phone_number or "")
    if len(cleaned) == 10 and not cleaned.startswith("91"):
        cleaned = "91" + cleaned
    return "+" + cleaned


def _ist_clock(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(IST).strftime("%H:%M")


class WhatsAppNotifier:
    """Template-message sender for the WhatsApp Cloud API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        access_token: Optional[str] = None,
        template_name: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or Config.WHATSAPP_API_URL).rstrip("/")
        self.phone_number_id = phone_number_id if phone_number_id is not None else Config.WHATSAPP_PHONE_NUMBER_ID
        self.access_token = access_token if access_token is not None else Config.WHATSAPP_ACCESS_TOKEN
        self.template_name = template_name or Config.WHATSAPP_TEMPLATE
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def build_payload(self, phone_number: str, parameters: List[str]) -> Dict[str, Any]:
        # The template has exactly four body slots
        texts = (list(parameters) + [""] * TEMPLATE_PARAMETER_COUNT)[:TEMPLATE_PARAMETER_COUNT]
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": format_phone_number(phone_number),
            "type": "template",
            "template": {
                "name": self.template_name,
                "language": {"code": "en"},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": text} for text in texts],
                    }
                ],
            },
        }

    async def send_template(self, phone_number: Optional[str], parameters: List[str]) -> bool:
        """Send one template message. Returns True only when the API accepted it."""
        if not self.is_configured:
            logger.debug("WhatsApp not configured, skipping notification")
            return False
        if not phone_number:
            logger.warning("No phone number for notification, skipping")
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/{self.phone_number_id}/messages",
                    json=self.build_payload(phone_number, parameters),
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {self.access_token}",
                    },
                )
            if response.status_code == 200:
                return True
            logger.error(f"WhatsApp send failed ({response.status_code}): {response.text}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp send error: {e}")
            return False

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def notify_entry_orders(
        self,
        phone_number: Optional[str],
        user_name: str,
        orders: List[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> bool:
        """Summary of the MTF entries placed for one user in a batch."""
        if not orders:
            return False
        total = sum(o.get("amount", 0) for o in orders)
        lines = ", ".join(
            f"{o['symbol']}: {o['quantity']} @ ₹{o['price']:.2f}" for o in orders[:5]
        )
        return await self.send_template(phone_number, [
            f"Hi {user_name or 'there'}! MTF trading orders placed",
            f"{len(orders)} MTF positions entered from daily scan",
            lines,
            f"Total MTF investment: ₹{total:,.0f} | {_ist_clock(now)} IST",
        ])

    async def notify_trailing_level(
        self,
        phone_number: Optional[str],
        symbol: str,
        level: int,
        locked_profit_pct: float,
        pnl_percentage: float,
        current_price: float,
    ) -> bool:
        return await self.send_template(phone_number, [
            f"{symbol} reached trailing level {level}",
            f"Current gain {pnl_percentage:+.2f}% at ₹{current_price:.2f}",
            f"Profit of {locked_profit_pct:.2f}% is now locked in",
            "Position continues to be monitored",
        ])

    async def notify_position_exited(
        self,
        phone_number: Optional[str],
        symbol: str,
        exit_reason: str,
        exit_price: float,
        pnl_amount: float,
        pnl_percentage: float,
        success: bool = True,
    ) -> bool:
        """Exit confirmation, or an alert that the exit order failed and the position is still open."""
        if success:
            headline = f"{symbol} position exited"
            footer = f"P&L: ₹{pnl_amount:,.2f} ({pnl_percentage:+.2f}%)"
        else:
            headline = f"{symbol} exit order FAILED"
            footer = "Position remains open, retrying next cycle"
        return await self.send_template(phone_number, [
            headline,
            exit_reason,
            f"Price: ₹{exit_price:.2f}",
            footer,
        ])
