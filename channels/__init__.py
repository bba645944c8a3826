"""Channel adapters for all supported communication channels."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    ChannelSendError,
    CircuitBreaker,
    render_text,
)
from channels.webchat_adapter import WebchatAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.sms_adapter import SMSAdapter
from channels.telegram_adapter import TelegramAdapter
from channels.voice_adapter import VoiceAdapter, VoiceCallState, CallStatus, DTMFCollector

ADAPTER_CLASSES: dict[str, type[ChannelAdapter]] = {
    "webchat": WebchatAdapter,
    "whatsapp": WhatsAppAdapter,
    "sms": SMSAdapter,
    "telegram": TelegramAdapter,
    "voice": VoiceAdapter,
}

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError", "ChannelSendError",
    "CircuitBreaker", "render_text", "ADAPTER_CLASSES",
    "WebchatAdapter", "WhatsAppAdapter", "SMSAdapter", "TelegramAdapter", "VoiceAdapter",
    "VoiceCallState", "CallStatus", "DTMFCollector",
]
