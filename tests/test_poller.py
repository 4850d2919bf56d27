from __future__ import annotations

import threading
from unittest.mock import Mock

from loguru import logger

from cstor_snapshot_engine.poller import StatusPoller


def test_status_poller_stops_after_terminal_status_and_reports_each_observation() -> None:
    observed: list[str] = []
    on_terminal = Mock()
    probe = Mock(side_effect=["Pending", "InProgress", "Done", "Done"])
    poller = StatusPoller(
        name="backup-test",
        probe=probe,
        on_status=observed.append,
        interval_seconds=0.01,
        on_terminal=on_terminal,
    )

    poller.start()

    assert poller.wait_for_terminal(5.0)
    poller.cancel()
    assert observed == ["Pending", "InProgress", "Done"]
    assert poller.last_status == "Done"
    on_terminal.assert_called_once_with()
    assert not poller.is_running()


def test_status_poller_keeps_polling_after_probe_error() -> None:
    observed: list[str] = []
    probe = Mock(side_effect=[RuntimeError("connection reset"), "Failed"])
    poller = StatusPoller(name="restore-test", probe=probe, on_status=observed.append, interval_seconds=0.01)

    poller.start()

    assert poller.wait_for_terminal(5.0)
    poller.cancel()
    assert observed == ["Failed"]


def test_status_poller_cancel_stops_loop_without_terminal_status() -> None:
    probed = threading.Event()

    def _probe() -> str:
        probed.set()
        return "InProgress"

    poller = StatusPoller(name="backup-slow", probe=_probe, on_status=lambda _: None, interval_seconds=0.01)
    poller.start()
    assert probed.wait(5.0)

    poller.cancel()

    assert not poller.is_running()
    assert not poller.wait_for_terminal(0)


def test_status_poller_cancel_with_blocked_probe_warns_and_discards_late_status() -> None:
    probing = threading.Event()
    release = threading.Event()
    observed: list[str] = []
    warnings: list[str] = []

    def _probe() -> str:
        probing.set()
        release.wait(5.0)
        return "Done"

    poller = StatusPoller(name="backup-blocked", probe=_probe, on_status=observed.append, interval_seconds=0.01)
    handler_id = logger.add(warnings.append, level="WARNING", format="{message}")
    try:
        poller.start()
        assert probing.wait(5.0)

        poller.cancel(join_timeout=0.01)

        assert poller.is_running()
        assert any("backup-blocked still running" in message for message in warnings)
    finally:
        logger.remove(handler_id)
        release.set()

    poller.cancel(join_timeout=5.0)
    assert not poller.is_running()
    assert observed == []
