"""Customer notification channels and the dispatcher that drives them."""

from .attachments import AttachmentEncoder, EncodedAttachment
from .dispatcher import ChannelOutcome, DeliveryStatus, DispatchResult, NotificationDispatcher
from .messaging import MessagingConfig, MessagingFallbackChain

__all__ = [
    "AttachmentEncoder",
    "ChannelOutcome",
    "DeliveryStatus",
    "DispatchResult",
    "EncodedAttachment",
    "MessagingConfig",
    "MessagingFallbackChain",
    "NotificationDispatcher",
]
