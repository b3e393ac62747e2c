"""
Health transition notifications.

A notification is posted when the health verdict changes, at most once per
``min_interval_seconds``. The boot-time verdict is skipped by default so a
restart does not page anyone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from raspi_monitor.errors import NotificationError
from raspi_monitor.health import Health, HealthReport
from raspi_monitor.logging import get_logger

if TYPE_CHECKING:
    from raspi_monitor.config import NotifyConfig

logger = get_logger(__name__)

REASON_INITIAL_SKIP = "initial-skip"
REASON_NO_CHANGE = "no-change"
REASON_RATE_LIMITED = "rate-limited"
REASON_STATE_CHANGED = "state-changed"

# Discord rejects message content longer than this
DISCORD_MAX_CONTENT = 2000


@dataclass(frozen=True)
class NotifyDecision:
    """Whether to notify, and why."""

    should_notify: bool
    reason: str


def decide_notify(
    prev_health: Health | None,
    next_health: Health,
    now_ms: int,
    last_notified_at_ms: int | None,
    min_interval_ms: int,
    skip_initial: bool = True,
) -> NotifyDecision:
    """
    Decide whether a health verdict warrants a notification.

    Checks run in order: boot skip, unchanged state, rate limit.

    Args:
        prev_health: Previous verdict, or None if this is the first one.
        next_health: Current verdict.
        now_ms: Current time in epoch milliseconds.
        last_notified_at_ms: When the last notification was sent, if ever.
        min_interval_ms: Minimum gap between two notifications.
        skip_initial: Never notify for the first verdict.

    Returns:
        NotifyDecision with one of the ``REASON_*`` values.
    """
    if skip_initial and prev_health is None:
        return NotifyDecision(False, REASON_INITIAL_SKIP)

    if prev_health == next_health:
        return NotifyDecision(False, REASON_NO_CHANGE)

    if last_notified_at_ms is not None and now_ms - last_notified_at_ms < min_interval_ms:
        return NotifyDecision(False, REASON_RATE_LIMITED)

    return NotifyDecision(True, REASON_STATE_CHANGED)


def format_message(report: HealthReport, prev_health: Health | None, hostname: str) -> str:
    """Render a short plain-text message for a health transition."""
    prev = prev_health.value.upper() if prev_health is not None else "UNKNOWN"
    lines = [f"[{hostname}] health {prev} -> {report.health.value.upper()}"]
    lines.extend(f"- {note}" for note in report.notes)
    return "\n".join(lines)[:DISCORD_MAX_CONTENT]


class DiscordNotifier:
    """
    Posts plain messages to a Discord webhook.

    Example:
        >>> notifier = DiscordNotifier("https://discord.com/api/webhooks/...")
        >>> await notifier.post("hello")
    """

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def post(self, content: str) -> None:
        """
        Post ``content`` to the webhook.

        Raises:
            NotificationError: If the URL is not set, the request fails, or
                the webhook answers with a non-2xx status.
        """
        if not self._webhook_url:
            raise NotificationError("Discord webhook URL not configured")

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._webhook_url, json={"content": content})
        except httpx.HTTPError as e:
            raise NotificationError(
                f"Discord webhook request failed: {e}",
                details={"error": str(e)},
            ) from e

        if not response.is_success:
            raise NotificationError(
                f"Discord webhook failed: {response.status_code} {response.reason_phrase}",
                details={
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )


class HealthWatcher:
    """
    Tracks the last verdict and notifies on transitions.

    ``observe`` never raises for delivery problems; failures are logged and
    the rate-limit clock is left untouched so the next transition retries.
    """

    def __init__(
        self,
        notifier: DiscordNotifier,
        *,
        min_interval_seconds: int = 300,
        skip_initial: bool = True,
        hostname: str = "localhost",
    ) -> None:
        self._notifier = notifier
        self.min_interval_ms = max(0, int(min_interval_seconds)) * 1000
        self.skip_initial = skip_initial
        self.hostname = hostname
        self.last_health: Health | None = None
        self.last_notified_at_ms: int | None = None

    @classmethod
    def from_config(cls, config: NotifyConfig, hostname: str = "localhost") -> HealthWatcher:
        """Create a watcher posting to the configured Discord webhook."""
        return cls(
            DiscordNotifier(
                config.discord_webhook_url,
                timeout_seconds=config.request_timeout_seconds,
            ),
            min_interval_seconds=config.min_interval_seconds,
            skip_initial=config.skip_initial,
            hostname=hostname,
        )

    async def observe(self, report: HealthReport, now_ms: int) -> NotifyDecision:
        """
        Record a verdict and post a notification if warranted.

        Returns:
            The decision taken for this verdict.
        """
        prev = self.last_health
        decision = decide_notify(
            prev,
            report.health,
            now_ms,
            self.last_notified_at_ms,
            self.min_interval_ms,
            self.skip_initial,
        )
        self.last_health = report.health

        if not decision.should_notify:
            return decision

        logger.info(
            "Health changed",
            extra={
                "from": prev.value if prev is not None else None,
                "to": report.health.value,
                "notes": report.notes,
            },
        )
        if not self._notifier.enabled:
            return decision

        try:
            await self._notifier.post(format_message(report, prev, self.hostname))
        except NotificationError as e:
            logger.warning(
                "Health notification failed",
                extra={"error_code": e.error_code, "error": e.message},
            )
            return decision

        self.last_notified_at_ms = now_ms
        return decision
