import logging
import shlex
import subprocess
from typing import List, Mapping

from .base import Notifier


class UserHookNotifier(Notifier):
    """Runs the user's post-processing commands with the item name appended.

    Each command is started in its own session and not waited for.
    """

    name = "UserHook"

    def __init__(self, options: Mapping[str, str]):
        super().__init__(options)
        raw = options.get("post_processors", "") or ""
        self.processors: List[str] = [p.strip() for p in raw.split(",") if p.strip()]

    def notify(self, event: str, payload: str) -> None:
        for processor in self.processors:
            command = shlex.split(processor) + [payload]
            try:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
                logging.debug(f"Executed user script: [{process.pid}] `{processor} \"{payload}\"`")
            except (OSError, ValueError) as e:
                logging.warning(f"User script error: {processor}: {e}")
