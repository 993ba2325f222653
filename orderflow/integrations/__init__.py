"""External integrations: payment gateway, webhooks and notifications."""
from .notifications import NotificationDispatcher
from .stripe_gateway import StripeGateway
from .webhook_handler import WebhookError, WebhookHandler, WebhookSignatureError

__all__ = [
    "NotificationDispatcher",
    "StripeGateway",
    "WebhookError",
    "WebhookHandler",
    "WebhookSignatureError",
]
