"""
Realtime publisher
Forwards freshly created notification rows to the pub/sub fan-out service.
The row already exists by the time this runs, so failures are only logged.
"""

import logging
import requests

logger = logging.getLogger(__name__)


class RealtimePublisher:
    def __init__(self, publish_url=None, timeout=2.0):
        self.publish_url = publish_url
        self.timeout = timeout

    def publish(self, notification):
        if not self.publish_url:
            return False

        try:
            response = requests.post(
                self.publish_url,
                json={"event": "notification.created", "data": notification.to_dict()},
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning(
                    "Realtime publish for notification %s returned %s: %s",
                    notification.id, response.status_code, response.text
                )
                return False
            return True
        except requests.RequestException as e:
            logger.warning("Error publishing notification %s: %s", notification.id, e)
            return False
