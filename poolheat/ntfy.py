# SPDX-License-Identifier: MPL-2.0
"""
ntfy operator alerts.

Publishes plain-text alerts to an ntfy topic when the schedule needs an
operator's attention: price data missing for the day, or schedule entries
that aged out without ever reaching the device.
See https://docs.ntfy.sh/publish/ for the publishing API.
"""

import logging
from datetime import date
from enum import IntEnum
from typing import Dict, List, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

from poolheat.models import ScheduleEntry

logger = logging.getLogger(__name__)


class Priority(IntEnum):
    """Message priority levels for ntfy notifications."""
    MIN = 1
    LOW = 2
    DEFAULT = 3
    HIGH = 4
    MAX = 5


class NtfyClient:
    """
    Publishes alerts to a single ntfy topic.

    Sending never raises; failures are logged and reported as False so that
    an unreachable ntfy server cannot break scheduling.

    Args:
        topic: The topic to publish messages to
        server: The ntfy server URL (default: https://ntfy.sh)
        token: Optional access token for authentication
        timeout: Request timeout in seconds (default: 10)
    """

    def __init__(
        self,
        topic: str,
        server: str = "https://ntfy.sh",
        token: Optional[str] = None,
        timeout: int = 10,
    ) -> None:
        if not topic:
            raise ValueError("Topic cannot be empty")

        self.topic = topic
        self.server = server.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._url = urljoin(self.server + "/", self.topic)

    def send(
        self,
        message: str,
        title: Optional[str] = None,
        priority: Optional[Priority] = None,
        tags: Optional[List[str]] = None,
    ) -> bool:
        """
        Publish a message to the topic.

        Args:
            message: The notification message body
            title: Optional message title
            priority: Optional message priority
            tags: Optional list of tags (can include emoji shortcodes)

        Returns:
            True if the server accepted the message
        """
        request = Request(
            self._url,
            data=message.encode("utf-8"),
            headers=self._headers(title, priority, tags),
            method="POST",
        )

        try:
            with urlopen(request, timeout=self.timeout) as response:
                status = response.status
        except HTTPError as e:
            logger.error(f"ntfy rejected alert for {self.topic}: {e.code} {e.reason}")
            return False
        except URLError as e:
            logger.error(f"ntfy server unreachable: {e.reason}")
            return False
        except Exception as e:
            logger.error(f"Failed to publish alert to {self.topic}: {e}")
            return False

        if status != 200:
            logger.warning(f"ntfy answered {status} for alert to {self.topic}")
            return False

        logger.debug(f"Alert published to {self.topic}: {message[:50]}")
        return True

    def _headers(self, title: Optional[str], priority: Optional[Priority],
                 tags: Optional[List[str]]) -> Dict[str, str]:
        headers = {}
        if title:
            headers["Title"] = title
        if priority is not None:
            headers["Priority"] = str(int(priority))
        if tags:
            headers["Tags"] = ",".join(tags)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def alert_missing_prices(self, for_date: date, detail: str) -> bool:
        """Alert that no schedule could be built for a day."""
        return self.send(
            f"No heat pump schedule for {for_date}: {detail}",
            title="Price data missing",
            priority=Priority.HIGH,
            tags=["warning"],
        )

    def alert_abandoned(self, for_date: date, entries: Sequence[ScheduleEntry]) -> bool:
        """Alert that schedule entries aged out without being executed."""
        hours = ", ".join(f"{e.hour:02d}:00" for e in entries)
        last_errors = {e.execution_result for e in entries if e.execution_result}
        message = f"{len(entries)} schedule entries for {for_date} were never executed: {hours}"
        if last_errors:
            message += "\nLast error: " + "; ".join(sorted(last_errors))
        return self.send(
            message,
            title="Heat pump commands missed",
            priority=Priority.HIGH,
            tags=["rotating_light"],
        )

    def __repr__(self) -> str:
        """Return string representation of the client."""
        return f"NtfyClient(topic={self.topic!r}, server={self.server!r})"
