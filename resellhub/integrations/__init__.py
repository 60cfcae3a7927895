"""External integrations: payment gateway, diagnostic log and upstream providers."""
from .pakasir_client import PakasirClient, VerifiedNotification, WebhookNotification
from .webhook_log import WebhookLog

__all__ = ["PakasirClient", "VerifiedNotification", "WebhookLog", "WebhookNotification"]
