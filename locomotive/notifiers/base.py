import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

import requests

HTTP_TIMEOUT = 15

EVENT_TITLES = {
    "transferStarted": "Transfer Started",
    "transferComplete": "Transfer Complete",
    "transferFailed": "Transfer Failed",
    "itemMoved": "Item Moved",
}


class Notifier(ABC):
    """Abstract Base Class for event listeners."""

    name = "notifier"

    def __init__(self, options: Mapping[str, str]):
        self.options = options

    @abstractmethod
    def notify(self, event: str, payload: str) -> None:
        pass

    def __call__(self, event: str, payload: str) -> None:
        self.notify(event, payload)


class HttpNotifier(Notifier):
    """A push service reached with one form-encoded POST per event."""

    endpoint = ""

    @abstractmethod
    def build_form(self, title: str, payload: str) -> Dict[str, Any]:
        pass

    def notify(self, event: str, payload: str) -> None:
        title = EVENT_TITLES.get(event, event)
        try:
            response = requests.post(self.endpoint, data=self.build_form(title, payload), timeout=HTTP_TIMEOUT)
            response.raise_for_status()
            logging.debug(f"{self.name} API request succeeded for: {payload}")
        except requests.exceptions.RequestException as e:
            logging.error(f"{self.name} API request failed for '{payload}': {e} [POST]")
