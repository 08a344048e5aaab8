"""Signed content-update notifications with SSRF-safe address pinning."""

from treepress.webhooks.address import is_safe_ip
from treepress.webhooks.dispatcher import (
    SIGNATURE_HEADER,
    DeliveryOutcome,
    PinnedResolver,
    WebhookDispatcher,
    WebhookTarget,
    sign_body,
)

__all__ = [
    "SIGNATURE_HEADER",
    "DeliveryOutcome",
    "PinnedResolver",
    "WebhookDispatcher",
    "WebhookTarget",
    "is_safe_ip",
    "sign_body",
]
