import logging
import subprocess
import sys

from .config import NotifyConfig
from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class SystemStrategy:
    """Desktop notifications for one platform.

    Subclasses only say which program to run; platforms without one get
    silent notifications.
    """

    def notification_command(self, title: str, message: str) -> list[str] | None:
        return None

    def notify(self, title: str, message: str) -> None:
        """Shows a desktop notification, if this platform supports it.

        Args:
            title (str): Heading of the notification.
            message (str): Body text.
        """
        cmd = self.notification_command(title, message)
        if cmd is None:
            return
        try:
            subprocess.run(cmd, stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug(f"{cmd[0]} unavailable; notification skipped: {e}")


class MacOSStrategy(SystemStrategy):
    def notification_command(self, title: str, message: str) -> list[str] | None:
        # Double quotes would end the AppleScript string literal.
        text = message.replace('"', "'")
        return ["osascript", "-e", f'display notification "{text}" with title "{title}"']


class LinuxStrategy(SystemStrategy):
    def notification_command(self, title: str, message: str) -> list[str] | None:
        return ["notify-send", title, message]


def get_system() -> SystemStrategy:
    """Picks the notification strategy for the running platform."""
    if sys.platform == "darwin":
        return MacOSStrategy()
    if sys.platform.startswith("linux"):
        return LinuxStrategy()
    return SystemStrategy()


class Notifier:
    """Tells the user about sync activity.

    `inform` carries change summaries, `warn` carries failures worth a look.
    Either can be routed to a user-supplied program (which receives the message
    as its only argument); otherwise a desktop notification is shown.
    """

    def __init__(
        self, config: NotifyConfig | None = None, system: SystemStrategy | None = None
    ):
        self.config = config or NotifyConfig()
        self.system = system or get_system()

    def inform(self, message: str) -> None:
        logger.info(f"INFO: {message}")
        if self.config.info_command:
            self._run_command(self.config.info_command, message)
        else:
            self.system.notify(APP_NAME, message)

    def warn(self, message: str) -> None:
        logger.warning(f"WARN: {message}")
        if self.config.warn_command:
            self._run_command(self.config.warn_command, message)
        else:
            self.system.notify(f"{APP_NAME} warning", message)

    @staticmethod
    def _run_command(command: str, message: str) -> None:
        try:
            subprocess.run([command, message], stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.error(f"Notification command '{command}' failed: {e}")
