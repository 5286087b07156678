"""
MTF Sentinel Trader - Notifications
"""

from .whatsapp import WhatsAppNotifier, format_phone_number

__all__ = ["WhatsAppNotifier", "format_phone_number"]
