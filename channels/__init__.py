"""Outbound messaging channels."""
from channels.base import (
    ChannelMetrics,
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from channels.whatsapp_adapter import (
    WhatsAppChannel,
    TRANSIENT_STATUS_CODES,
    build_template_components,
    build_template_payload,
    build_text_payload,
)

__all__ = [
    "ChannelMetrics", "DeliveryError", "PermanentDeliveryError", "TransientDeliveryError",
    "WhatsAppChannel", "TRANSIENT_STATUS_CODES",
    "build_template_components", "build_template_payload", "build_text_payload",
]
