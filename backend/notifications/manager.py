"""Notification manager: recipient-rule resolution and fan-out to channels."""

import logging
from typing import Optional

from notifications.channels import (
    AlertChannel,
    ChannelKind,
    Delivery,
    EmailChannel,
    WebhookChannel,
    WorkflowAlert,
)

logger = logging.getLogger(__name__)

MANAGERS_RULE = "managers"


def resolve_recipients(recipient_rule: str, manager_emails: list[str]) -> list[tuple[ChannelKind, str]]:
    """Turn a recipient rule into (channel, recipient) targets.

    ``email:<address>`` and ``webhook:<url>`` name a single target,
    ``managers`` expands to every manager address, and any other rule
    is a named webhook audience (e.g. ``alerts``).
    """
    rule = recipient_rule.strip()
    if rule == MANAGERS_RULE:
        return [(ChannelKind.EMAIL, email) for email in manager_emails]
    if rule.startswith("email:"):
        return [(ChannelKind.EMAIL, rule[len("email:"):])]
    if rule.startswith("webhook:"):
        return [(ChannelKind.WEBHOOK, rule[len("webhook:"):])]
    return [(ChannelKind.WEBHOOK, rule)]


class NotificationManager:
    """Holds the configured channels. Use get_notification_manager() for the shared one."""

    def __init__(self):
        self._channels: dict[ChannelKind, AlertChannel] = {}

    def register_channel(self, channel: AlertChannel) -> None:
        self._channels[channel.kind] = channel
        logger.info(f"Notification channel registered: {channel.kind.value}")

    def configure_channels(self, config: dict) -> None:
        """Register channels from ``Settings.notification_channels_config()``."""
        if "email" in config:
            self.register_channel(EmailChannel(config["email"]))
        if "webhook" in config:
            self.register_channel(WebhookChannel(config["webhook"]))

    @property
    def channel_names(self) -> list[str]:
        return [kind.value for kind in self._channels]

    async def notify(
        self,
        recipient_rule: str,
        alert: WorkflowAlert,
        manager_emails: Optional[list[str]] = None,
    ) -> list[Delivery]:
        """Deliver ``alert`` to every target of ``recipient_rule``.

        Returns one Delivery per target; an empty list when the rule
        resolved to nobody.
        """
        targets = resolve_recipients(recipient_rule, list(manager_emails or []))
        if not targets:
            logger.warning(f"Recipient rule '{recipient_rule}' resolved to no recipients")
            return []

        deliveries = []
        for kind, recipient in targets:
            channel = self._channels.get(kind)
            if channel is None:
                delivery = Delivery(kind, recipient, ok=False, error=f"Channel not configured: {kind.value}")
            else:
                delivery = await channel.deliver(alert, recipient)
            if delivery.ok:
                logger.info(f"Alert '{alert.title}' sent via {kind.value} to {delivery.recipient}")
            else:
                logger.warning(f"Alert '{alert.title}' not sent via {kind.value}: {delivery.error}")
            deliveries.append(delivery)
        return deliveries


_manager: Optional[NotificationManager] = None


def get_notification_manager() -> NotificationManager:
    global _manager
    if _manager is None:
        _manager = NotificationManager()
    return _manager
