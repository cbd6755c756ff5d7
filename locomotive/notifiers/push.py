from typing import Any, Dict

from .base import HttpNotifier


class PushoverNotifier(HttpNotifier):
    name = "Pushover"
    endpoint = "https://api.pushover.net/1/messages.json"

    def build_form(self, title: str, payload: str) -> Dict[str, Any]:
        return {
            "token": self.options.get("api_token", ""),
            "user": self.options.get("user_key", ""),
            "title": title,
            "message": payload,
        }


class ProwlNotifier(HttpNotifier):
    name = "Prowl"
    endpoint = "https://api.prowlapp.com/publicapi/add"

    def build_form(self, title: str, payload: str) -> Dict[str, Any]:
        return {
            "apikey": self.options.get("api_key", ""),
            "application": "Locomotive",
            "event": title,
            "description": payload,
        }


class PushsaferNotifier(HttpNotifier):
    name = "Pushsafer"
    endpoint = "https://www.pushsafer.com/api"

    def build_form(self, title: str, payload: str) -> Dict[str, Any]:
        return {
            "k": self.options.get("private_key", ""),
            "t": title,
            "m": payload,
        }
