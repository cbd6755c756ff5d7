import logging
from typing import Dict, Mapping, Type

from .base import EVENT_TITLES, Notifier
from .push import ProwlNotifier, PushoverNotifier, PushsaferNotifier
from .user_hook import UserHookNotifier

NOTIFIERS: Dict[str, Type[Notifier]] = {
    "pushover": PushoverNotifier,
    "prowl": ProwlNotifier,
    "pushsafer": PushsaferNotifier,
    "hook": UserHookNotifier,
}


def get_notifier(channel: str, options: Mapping[str, str]) -> Notifier:
    """
    Factory function to get a notifier instance for a channel name.
    """
    notifier_cls = NOTIFIERS.get(channel.lower())
    if notifier_cls is None:
        raise ValueError(f"Unsupported notification channel: {channel}")
    logging.debug(f"Creating notifier for channel: {channel}")
    return notifier_cls(options)


__all__ = ["EVENT_TITLES", "NOTIFIERS", "Notifier", "get_notifier"]
