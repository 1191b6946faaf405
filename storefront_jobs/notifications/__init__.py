from .email import EmailSender
from .webhooks import WebhookRelay

__all__ = ["EmailSender", "WebhookRelay"]
