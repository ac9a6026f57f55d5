"""Rate-limited user notifications.

Notifications are always logged. Desktop delivery is attempted on Linux
(notify-send) and macOS (osascript); delivery failures are logged, never
raised.

Each (context, severity) pair has its own cooldown. The time of the last
notification is kept in a file so the limit holds across restarts::

    state_dir/notify-cooldown/
    +-- backup_stale-warning
    +-- backup_error-critical
"""

import logging
import platform
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from checkpoint.config import NOTIFY_COOLDOWN_CRITICAL, NOTIFY_COOLDOWN_WARNING

logger = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

DEFAULT_COOLDOWNS = {
    SEVERITY_INFO: 0,
    SEVERITY_WARNING: NOTIFY_COOLDOWN_WARNING,
    SEVERITY_CRITICAL: NOTIFY_COOLDOWN_CRITICAL,
}


@dataclass
class Notification:
    """Record of a notification that passed the cooldown."""
    timestamp: str
    context: str
    severity: str
    title: str
    message: str
    delivered: bool


class Notifier:
    """Sends notifications at most once per cooldown window per context.

    ``deliver`` is a ``(severity, title, message) -> bool`` callable; the
    default shells out to the desktop notifier.
    """

    def __init__(self, deliver=None, cooldowns: dict | None = None,
                 state_dir=None, enable_desktop: bool = True, clock=time.time):
        self._deliver = deliver or self._desktop_notify
        self.cooldowns = dict(DEFAULT_COOLDOWNS)
        if cooldowns:
            self.cooldowns.update(cooldowns)
        self.state_dir = Path(state_dir) / "notify-cooldown" if state_dir else None
        self.enable_desktop = enable_desktop
        self._clock = clock
        self._last_sent: dict[tuple[str, str], float] = {}
        self._sent: list[Notification] = []
        self._system = platform.system()

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------

    def _cooldown_file(self, context: str, severity: str) -> Path | None:
        if self.state_dir is None:
            return None
        return self.state_dir / f"{context}-{severity}"

    def _last_time(self, context: str, severity: str) -> float | None:
        key = (context, severity)
        if key in self._last_sent:
            return self._last_sent[key]
        path = self._cooldown_file(context, severity)
        if path is None:
            return None
        try:
            return float(path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _mark_sent(self, context: str, severity: str, when: float):
        self._last_sent[(context, severity)] = when
        path = self._cooldown_file(context, severity)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{int(when)}\n")
        except OSError as exc:
            logger.warning("Could not persist notification cooldown %s: %s", path, exc)

    def should_notify(self, context: str, severity: str) -> bool:
        cooldown = self.cooldowns.get(severity, 0)
        if cooldown <= 0:
            return True
        last = self._last_time(context, severity)
        if last is None:
            return True
        return self._clock() - last >= cooldown

    def reset(self, context: str):
        """Forget cooldowns for ``context`` (e.g. after recovery)."""
        for severity in list(self.cooldowns):
            self._last_sent.pop((context, severity), None)
            path = self._cooldown_file(context, severity)
            if path is not None and path.exists():
                path.unlink()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, context: str, severity: str, title: str,
             message: str) -> Notification | None:
        """Send unless suppressed by the cooldown. Returns None when suppressed."""
        if not self.should_notify(context, severity):
            logger.debug("Notification suppressed by cooldown: %s/%s", context, severity)
            return None

        log_fn = {
            SEVERITY_INFO: logger.info,
            SEVERITY_WARNING: logger.warning,
            SEVERITY_CRITICAL: logger.critical,
        }.get(severity, logger.info)
        log_fn("NOTIFY [%s] %s: %s", severity, title, message)

        delivered = True
        if self.enable_desktop:
            delivered = bool(self._deliver(severity, title, message))

        now = self._clock()
        self._mark_sent(context, severity, now)
        note = Notification(
            timestamp=datetime.fromtimestamp(now).isoformat(),
            context=context,
            severity=severity,
            title=title,
            message=message,
            delivered=delivered,
        )
        self._sent.append(note)
        return note

    def _desktop_notify(self, severity: str, title: str, message: str) -> bool:
        """Try platform-specific desktop notification. Returns success."""
        try:
            if self._system == "Linux":
                urgency = {
                    SEVERITY_INFO: "low",
                    SEVERITY_WARNING: "normal",
                    SEVERITY_CRITICAL: "critical",
                }.get(severity, "normal")
                subprocess.Popen(
                    ["notify-send", "-u", urgency, title, message],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
                return True
            elif self._system == "Darwin":
                safe_title = title.replace('"', "'")
                safe_message = message.replace('"', "'")
                script = f'display notification "{safe_message}" with title "{safe_title}"'
                subprocess.Popen(
                    ["osascript", "-e", script],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
                return True
            return True
        except OSError as exc:
            logger.debug("Desktop notification failed: %s", exc)
            return False

    @property
    def sent(self) -> list[Notification]:
        return list(self._sent)
