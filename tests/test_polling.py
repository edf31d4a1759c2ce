"""Tests for backoff policies, deadlines and poll loops."""

import logging
from unittest import mock

import pytest

from hana_disk_backup.core.polling import (
    BackoffPolicy,
    Deadline,
    PollPending,
    call_with_retry,
    poll,
)
from hana_disk_backup.errors import (
    ExternalServiceError,
    PollTimeoutError,
    WorkflowCancelled,
)


class TestBackoffPolicy:
    """Tests for BackoffPolicy validation."""

    def test_intervals_are_capped(self):
        policy = BackoffPolicy(
            initial_interval=5, multiplier=2, max_interval=15, max_attempts=5
        )
        assert policy.intervals() == [5, 10, 15, 15]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_interval": -1},
            {"max_interval": -1},
            {"multiplier": 0.5},
            {"max_attempts": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestDeadline:
    """Tests for Deadline."""

    def test_no_timeout_never_expires(self):
        deadline = Deadline()
        assert deadline.remaining() is None
        assert not deadline.expired()
        deadline.check()

    def test_timeout(self):
        now = [100.0]
        deadline = Deadline(timeout=5, clock=lambda: now[0])

        assert deadline.remaining() == 5
        now[0] = 106.0
        assert deadline.expired()
        with pytest.raises(WorkflowCancelled, match="deadline exceeded"):
            deadline.check("upload")

    def test_cancel(self):
        deadline = Deadline()
        deadline.cancel("received SIGTERM")

        assert deadline.cancelled
        with pytest.raises(WorkflowCancelled, match="upload interrupted: received SIGTERM"):
            deadline.check("upload")

    def test_cancelled_sleep_returns_immediately(self):
        """Test that sleeping on a cancelled deadline does not block."""
        deadline = Deadline()
        deadline.cancel()
        deadline.sleep(3600)


class TestPoll:
    """Tests for poll."""

    def test_returns_when_ready(self, no_backoff):
        check = mock.MagicMock(side_effect=[PollPending("CREATING"), "READY"])

        assert poll(check, no_backoff, Deadline(), "creation") == "READY"
        assert check.call_count == 2

    def test_exhausted(self, no_backoff):
        check = mock.MagicMock(side_effect=PollPending("still CREATING"))

        with pytest.raises(PollTimeoutError, match="creation did not complete after 3"):
            poll(check, no_backoff, Deadline(), "creation")
        assert check.call_count == 3

    def test_terminal_error_stops_polling(self, no_backoff):
        """Test that errors other than PollPending are not retried."""
        check = mock.MagicMock(side_effect=ExternalServiceError("snapshot is FAILED"))

        with pytest.raises(ExternalServiceError, match="FAILED"):
            poll(check, no_backoff, Deadline(), "creation")
        check.assert_called_once()

    def test_cancelled(self, no_backoff):
        deadline = Deadline()
        deadline.cancel("received SIGINT")
        check = mock.MagicMock()

        with pytest.raises(WorkflowCancelled, match="received SIGINT"):
            poll(check, no_backoff, deadline, "upload")
        check.assert_not_called()

    def test_cancelled_while_pending(self, no_backoff):
        """Test that a cancel between attempts ends the loop as cancelled."""
        deadline = Deadline()

        def check():
            deadline.cancel("received SIGTERM")
            raise PollPending("UPLOADING")

        with pytest.raises(WorkflowCancelled):
            poll(check, no_backoff, deadline, "upload")

    def test_schedule_logged(self, caplog):
        """Test that the wait schedule is logged when polling starts."""
        caplog.set_level(logging.DEBUG, logger="hana_disk_backup.core.polling")
        policy = BackoffPolicy(
            initial_interval=5, multiplier=2, max_interval=15, max_attempts=3
        )

        assert poll(lambda: "READY", policy, Deadline(), "upload of snap") == "READY"

        assert "Polling upload of snap, waits between attempts: [5, 10]" in caplog.text


class TestCallWithRetry:
    """Tests for call_with_retry."""

    def test_transient_errors_retried(self, no_backoff):
        func = mock.MagicMock(side_effect=[ConnectionError(), ConnectionError(), "ok"])

        result = call_with_retry(
            func, no_backoff, lambda e: isinstance(e, ConnectionError)
        )

        assert result == "ok"
        assert func.call_count == 3

    def test_permanent_error_raised_at_once(self, no_backoff):
        func = mock.MagicMock(side_effect=ValueError("bad request"))

        with pytest.raises(ValueError, match="bad request"):
            call_with_retry(func, no_backoff, lambda e: isinstance(e, ConnectionError))
        func.assert_called_once()

    def test_last_error_reraised(self, no_backoff):
        func = mock.MagicMock(side_effect=ConnectionError("reset"))

        with pytest.raises(ConnectionError, match="reset"):
            call_with_retry(func, no_backoff, lambda e: True)
        assert func.call_count == no_backoff.max_attempts
