"""
Operator alerts — posts to a Discord webhook.

Alerts are best-effort: a failed post is logged and reported as False, never
raised into the trading loop.
"""
import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)

WEBHOOK_ENV = "RANGEBOT_DISCORD_WEBHOOK"
MAX_MESSAGE_LEN = 1900  # Discord hard limit is 2000


def send_alert(message: str, webhook_url: Optional[str] = None,
               mention: str = "") -> bool:
    """Send an alert message.

    Args:
        message: Text to send.
        webhook_url: Discord webhook. Defaults to $RANGEBOT_DISCORD_WEBHOOK.
        mention: Optional mention prefix, e.g. "<@1234>".

    Returns:
        True if sent successfully.
    """
    url = webhook_url or os.environ.get(WEBHOOK_ENV, "")
    if not url:
        logger.warning(f"No alert webhook configured, alert dropped: {message}")
        return False

    if mention:
        message = f"{mention}\n{message}"
    if len(message) > MAX_MESSAGE_LEN:
        message = message[:MAX_MESSAGE_LEN] + "…"

    try:
        resp = requests.post(url, json={"content": message}, timeout=10)
        if resp.status_code >= 300:
            logger.error(f"Discord send failed: {resp.status_code} {resp.text[:200]}")
            return False
        return True
    except requests.exceptions.RequestException as e:
        logger.error(f"Discord send exception: {e}")
        return False
