"""Unit tests for collaborator retry and Slack notification."""
from unittest.mock import Mock, patch

import pytest
import requests

from rewards_tracker.config import NotifierSettings
from rewards_tracker.exceptions import InvariantViolationError, PriceNotAvailableError, UnavailableError
from rewards_tracker.notifier import Notifier
from rewards_tracker.retry import call_with_retry


def flaky(failures, result="ok", error=UnavailableError):
    calls = []

    def call(*args, **kwargs):
        calls.append((args, kwargs))
        if len(calls) <= failures:
            raise error("RPC timeout")
        return result

    return call, calls


def test_retries_until_success():
    func, calls = flaky(2)

    assert call_with_retry(func, "a", key="b", max_tries=3, factor=0, max_value=0) == "ok"
    assert calls == [(("a",), {"key": "b"})] * 3


def test_gives_up_after_max_tries():
    func, calls = flaky(5)

    with pytest.raises(UnavailableError):
        call_with_retry(func, max_tries=3, factor=0, max_value=0)

    assert len(calls) == 3


def test_price_outage_counts_as_unavailable():
    func, calls = flaky(1, error=PriceNotAvailableError)

    assert call_with_retry(func, max_tries=2, factor=0, max_value=0) == "ok"
    assert len(calls) == 2


def test_other_errors_are_not_retried():
    func, calls = flaky(1, error=InvariantViolationError)

    with pytest.raises(InvariantViolationError):
        call_with_retry(func, max_tries=3, factor=0, max_value=0)

    assert len(calls) == 1


def test_zero_tries_still_calls_once():
    func, calls = flaky(0)

    assert call_with_retry(func, max_tries=0) == "ok"
    assert len(calls) == 1


@pytest.fixture
def webhook_settings():
    with patch.dict('os.environ', {'SLACK_WEBHOOK': 'https://hooks.slack.test/T000/B000'}, clear=False):
        yield NotifierSettings()


def test_notifier_without_webhook_does_nothing():
    with patch.dict('os.environ', {}, clear=True):
        notifier = Notifier()

    with patch('rewards_tracker.notifier.requests.post') as mock_post:
        assert notifier.send("hello") is False

    assert not notifier.enabled
    mock_post.assert_not_called()


def test_notifier_posts_message(webhook_settings):
    notifier = Notifier(webhook_settings, timeout=5)

    with patch('rewards_tracker.notifier.requests.post') as mock_post:
        mock_post.return_value = Mock(status_code=200)
        assert notifier.send("Sweep completed") is True

    mock_post.assert_called_once_with(
        'https://hooks.slack.test/T000/B000', json={"text": "Sweep completed"}, timeout=5
    )


def test_notifier_swallows_delivery_failure(webhook_settings):
    notifier = Notifier(webhook_settings)

    with patch('rewards_tracker.notifier.requests.post', side_effect=requests.exceptions.ConnectionError("down")):
        assert notifier.send("Sweep failed") is False
