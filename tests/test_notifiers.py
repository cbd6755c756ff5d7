from unittest.mock import MagicMock, patch

import pytest
import requests

from locomotive.config_manager import Settings
from locomotive.events import EventEmitter, setup_listeners
from locomotive.notifiers import get_notifier
from locomotive.notifiers.push import ProwlNotifier, PushoverNotifier, PushsaferNotifier
from locomotive.notifiers.user_hook import UserHookNotifier


def _settings(**overrides):
    values = dict(host="h", sources=["/r"], targets=["/l"], username="u")
    values.update(overrides)
    return Settings(**values)


def test_registry_returns_notifier_types():
    assert isinstance(get_notifier("pushover", {}), PushoverNotifier)
    assert isinstance(get_notifier("PROWL", {}), ProwlNotifier)
    assert isinstance(get_notifier("pushsafer", {}), PushsaferNotifier)
    assert isinstance(get_notifier("hook", {}), UserHookNotifier)
    with pytest.raises(ValueError):
        get_notifier("carrier-pigeon", {})


@patch("locomotive.notifiers.base.requests.post")
def test_pushover_posts_form(mock_post):
    notifier = PushoverNotifier({"api_token": "tok", "user_key": "usr"})

    notifier.notify("transferComplete", "movie.mkv")

    mock_post.assert_called_once()
    args, kwargs = mock_post.call_args
    assert args[0] == "https://api.pushover.net/1/messages.json"
    assert kwargs["data"] == {
        "token": "tok", "user": "usr", "title": "Transfer Complete", "message": "movie.mkv",
    }
    assert kwargs["timeout"] > 0


@patch("locomotive.notifiers.base.requests.post")
def test_prowl_and_pushsafer_forms(mock_post):
    ProwlNotifier({"api_key": "k"}).notify("itemMoved", "album")
    PushsaferNotifier({"private_key": "p"}).notify("transferFailed", "album")

    prowl_form = mock_post.call_args_list[0][1]["data"]
    pushsafer_form = mock_post.call_args_list[1][1]["data"]
    assert prowl_form["event"] == "Item Moved"
    assert prowl_form["description"] == "album"
    assert pushsafer_form == {"k": "p", "t": "Transfer Failed", "m": "album"}


@patch("locomotive.notifiers.base.requests.post", side_effect=requests.exceptions.ConnectionError("down"))
def test_http_failure_is_logged_not_raised(mock_post, caplog):
    PushoverNotifier({}).notify("transferStarted", "movie.mkv")
    assert "Pushover API request failed" in caplog.text


@patch("locomotive.notifiers.user_hook.subprocess.Popen")
def test_user_hook_runs_each_processor_with_item_name(mock_popen):
    hook = UserHookNotifier({"post_processors": "/bin/unpack --fast, /bin/scan"})

    hook.notify("transferComplete", "My Show")

    commands = [c[0][0] for c in mock_popen.call_args_list]
    assert commands == [["/bin/unpack", "--fast", "My Show"], ["/bin/scan", "My Show"]]


@patch("locomotive.notifiers.user_hook.subprocess.Popen", side_effect=FileNotFoundError("nope"))
def test_user_hook_failure_is_a_warning(mock_popen, caplog):
    UserHookNotifier({"post_processors": "/missing"}).notify("transferComplete", "x")
    assert "User script error" in caplog.text


class TestEventEmitter:

    def test_emits_to_listeners_in_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.add_listener("itemMoved", lambda event, payload: calls.append(("a", payload)))
        emitter.add_listener("itemMoved", lambda event, payload: calls.append(("b", payload)))

        emitter.emit("itemMoved", "movie.mkv")
        emitter.emit("transferFailed", "ignored")

        assert calls == [("a", "movie.mkv"), ("b", "movie.mkv")]

    def test_failing_listener_does_not_stop_others(self, caplog):
        emitter = EventEmitter()
        second = MagicMock()
        emitter.add_listener("transferComplete", MagicMock(side_effect=RuntimeError("boom")))
        emitter.add_listener("transferComplete", second)

        emitter.emit("transferComplete", "movie.mkv")

        second.assert_called_once_with("transferComplete", "movie.mkv")
        assert "boom" in caplog.text

    def test_unknown_event_is_rejected(self):
        with pytest.raises(ValueError):
            EventEmitter().add_listener("transferExploded", MagicMock())


def test_setup_listeners_wires_hook_and_channels():
    settings = _settings(
        post_processors="/bin/scan",
        notifications={
            "pushover": {"enable": "true", "events": "transferStarted, itemMoved, bogus"},
            "telegraph": {"enable": "true", "events": "itemMoved"},
        },
    )

    emitter = setup_listeners(EventEmitter(), settings)

    assert emitter.listener_count("transferComplete") == 1
    assert emitter.listener_count("transferStarted") == 1
    assert emitter.listener_count("itemMoved") == 1
    assert emitter.listener_count("transferFailed") == 0


def test_setup_listeners_without_hooks_or_channels():
    emitter = setup_listeners(EventEmitter(), _settings())
    assert emitter.listener_count("transferComplete") == 0
