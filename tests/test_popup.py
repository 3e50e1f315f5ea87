from __future__ import annotations

import threading
import time
import urllib.error

import pytest

from mockview.popup import (
    POPUP_BLOCKED_MESSAGE,
    ClosureWatcher,
    PopupLauncher,
    ThreadingScheduler,
    TokenRefresher,
    TokenState,
    build_checkout_url,
    open_payment_popup,
    popup_geometry,
    window_features,
)


class FakeWindow:
    def __init__(self):
        self.closed = False
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        self.closed = True


class FakeHost:
    def __init__(self, screen_width=1920, screen_height=1080, block=False):
        self.screen_width = screen_width
        self.screen_height = screen_height
        self.block = block
        self.opened = []
        self.notices = []
        self.window = FakeWindow()

    def open(self, url, name, features):
        self.opened.append((url, name, features))
        return None if self.block else self.window

    def notify(self, message):
        self.notices.append(message)


class ManualScheduler:
    """Interval scheduler driven by ``advance()`` instead of wall-clock time."""

    def __init__(self):
        self.timers = {}
        self.cleared = []
        self._next = 0

    def set_interval(self, callback, seconds):
        self._next += 1
        self.timers[self._next] = callback
        return self._next

    def clear_interval(self, handle):
        self.cleared.append(handle)
        self.timers.pop(handle, None)

    def advance(self, ticks=1):
        for _ in range(ticks):
            for callback in list(self.timers.values()):
                callback()


def parse_features(features):
    return dict(item.split("=", 1) for item in features.split(","))


@pytest.mark.parametrize(
    "screen,size",
    [
        ((1920, 1080), (700, 700)),
        ((1280, 720), (300, 500)),
        ((800, 600), (1024, 900)),
        ((1365, 767), (700, 700)),
    ],
)
def test_geometry_is_centered_without_clamping(screen, size):
    geometry = popup_geometry(screen[0], screen[1], size[0], size[1])
    assert geometry["left"] == (screen[0] - size[0]) / 2
    assert geometry["top"] == (screen[1] - size[1]) / 2
    assert geometry["width"] == size[0]
    assert geometry["height"] == size[1]


def test_oversized_popup_gets_negative_offsets():
    features = parse_features(window_features(popup_geometry(800, 600, 1024, 900)))
    assert features["left"] == "-112"
    assert features["top"] == "-150"


def test_fractional_offsets_are_kept():
    features = parse_features(window_features(popup_geometry(1365, 767, 700, 700)))
    assert features["left"] == "332.5"
    assert features["top"] == "33.5"


@pytest.mark.parametrize("package_id", ["bundle_3", "pro_monthly", "a b", "x&y=1"])
def test_checkout_url_carries_package_id_verbatim(package_id):
    assert build_checkout_url(package_id) == f"/payments/checkout?packageId={package_id}"


@pytest.mark.parametrize("package_id", [None, ""])
def test_checkout_url_without_package(package_id):
    assert build_checkout_url(package_id) == "/payments/checkout"


def test_blocked_popup_notifies_and_registers_nothing():
    host = FakeHost(block=True)
    scheduler = ManualScheduler()
    calls = []

    result = PopupLauncher(host, scheduler).open("bundle_5", lambda: calls.append(1))

    assert not result
    assert host.notices == [POPUP_BLOCKED_MESSAGE]
    assert scheduler.timers == {}
    scheduler.advance(5)
    assert calls == []


def test_open_without_callback_returns_window():
    host = FakeHost()
    scheduler = ManualScheduler()

    result = PopupLauncher(host, scheduler).open("bundle_5")

    assert result is host.window
    assert scheduler.timers == {}


def test_reference_scenario():
    host = FakeHost(1920, 1080)
    scheduler = ManualScheduler()
    calls = []

    cleanup = PopupLauncher(host, scheduler).open("pro_monthly", lambda: calls.append(len(calls)))

    assert callable(cleanup)
    url, name, features = host.opened[0]
    assert url == "/payments/checkout?packageId=pro_monthly"
    assert name == "payment"
    assert features == "width=700,height=700,left=610,top=190,resizable=no,scrollbars=no"

    scheduler.advance(2)
    assert calls == []
    host.window.closed = True
    scheduler.advance(1)
    assert calls == [0]
    scheduler.advance(5)
    assert calls == [0]
    assert scheduler.timers == {}


def test_callback_fires_once_only_after_closed_is_seen():
    window = FakeWindow()
    scheduler = ManualScheduler()
    calls = []
    ClosureWatcher(window, lambda: calls.append(1), scheduler, 1)

    window.closed = True
    assert calls == []
    scheduler.advance(1)
    assert calls == [1]
    scheduler.advance(3)
    assert calls == [1]


def test_cleanup_while_open_closes_window_without_callback():
    host = FakeHost()
    scheduler = ManualScheduler()
    calls = []

    cleanup = PopupLauncher(host, scheduler).open(None, lambda: calls.append(1))
    cleanup()

    assert host.window.closed
    assert host.window.close_calls == 1
    assert scheduler.timers == {}
    scheduler.advance(3)
    assert calls == []


def test_cleanup_after_closure_is_a_noop():
    host = FakeHost()
    scheduler = ManualScheduler()
    calls = []

    cleanup = PopupLauncher(host, scheduler).open(None, lambda: calls.append(1))
    host.window.closed = True
    scheduler.advance(1)
    cleared = list(scheduler.cleared)

    cleanup()
    cleanup()

    assert calls == [1]
    assert scheduler.cleared == cleared
    assert host.window.close_calls == 0


def test_cleanup_twice_is_safe():
    window = FakeWindow()
    scheduler = ManualScheduler()
    watcher = ClosureWatcher(window, lambda: None, scheduler, 1)

    watcher.cleanup()
    watcher.cleanup()

    assert window.close_calls == 1
    assert not watcher.active


def test_callback_exception_propagates_and_does_not_refire():
    window = FakeWindow()
    scheduler = ManualScheduler()
    calls = []

    def boom():
        calls.append(1)
        raise RuntimeError("boom")

    ClosureWatcher(window, boom, scheduler, 1)
    window.closed = True
    with pytest.raises(RuntimeError):
        scheduler.advance(1)
    scheduler.advance(2)
    assert calls == [1]


def test_sessions_have_independent_timers():
    scheduler = ManualScheduler()
    first, second = FakeWindow(), FakeWindow()
    calls = []
    ClosureWatcher(first, lambda: calls.append("first"), scheduler, 1)
    ClosureWatcher(second, lambda: calls.append("second"), scheduler, 1)

    second.closed = True
    scheduler.advance(1)
    assert calls == ["second"]
    first.closed = True
    scheduler.advance(1)
    assert calls == ["second", "first"]


class EagerScheduler(ManualScheduler):
    """Runs the first tick synchronously inside ``set_interval``."""

    def set_interval(self, callback, seconds):
        handle = super().set_interval(callback, seconds)
        callback()
        return handle


def build_watcher_in_thread(window, callback, scheduler):
    built = []
    worker = threading.Thread(target=lambda: built.append(ClosureWatcher(window, callback, scheduler, 1)), daemon=True)
    worker.start()
    worker.join(2)
    assert not worker.is_alive(), "ClosureWatcher construction deadlocked"
    return built[0]


def test_synchronous_first_tick_on_closed_window_fires_once():
    window = FakeWindow()
    window.closed = True
    scheduler = EagerScheduler()
    calls = []

    watcher = build_watcher_in_thread(window, lambda: calls.append(1), scheduler)

    assert calls == [1]
    assert not watcher.active
    assert scheduler.cleared == [1]
    assert scheduler.timers == {}
    scheduler.advance(2)
    watcher.cleanup()
    assert calls == [1]


def test_synchronous_first_tick_on_open_window_keeps_polling():
    window = FakeWindow()
    scheduler = EagerScheduler()
    calls = []

    watcher = build_watcher_in_thread(window, lambda: calls.append(1), scheduler)

    assert calls == []
    assert watcher.active
    window.closed = True
    scheduler.advance(1)
    assert calls == [1]
    assert scheduler.cleared == [1]


def test_threading_scheduler_detects_closure():
    window = FakeWindow()
    fired = threading.Event()
    watcher = ClosureWatcher(window, fired.set, ThreadingScheduler(), 0.01)

    window.closed = True
    assert fired.wait(2)
    assert not watcher.active


def test_threading_scheduler_cleanup_stops_polling():
    window = FakeWindow()
    calls = []
    watcher = ClosureWatcher(window, lambda: calls.append(1), ThreadingScheduler(), 0.01)

    watcher.cleanup()
    time.sleep(0.05)

    assert window.closed
    assert calls == []


def test_refresher_replaces_cached_balance():
    state = TokenState(tokens=3)
    seen = []

    def fetch(auth_token):
        seen.append(auth_token)
        return 13

    TokenRefresher(state, "token-abc", fetch).refresh()

    assert seen == ["token-abc"]
    snapshot = state.snapshot()
    assert snapshot["tokens"] == 13
    assert snapshot["is_loading"] is False
    assert snapshot["last_fetched"] is not None


def test_refresher_keeps_previous_balance_on_failure():
    state = TokenState(tokens=7)

    def fetch(_):
        raise urllib.error.URLError("offline")

    TokenRefresher(state, "token", fetch).refresh()

    assert state.tokens == 7
    assert state.is_loading is False
    assert state.last_fetched is None


def test_refresher_skips_while_refresh_in_flight():
    state = TokenState(tokens=1)
    calls = []
    state.begin_refresh()

    TokenRefresher(state, "token", lambda _: calls.append(1) or 5).refresh()

    assert calls == []
    assert state.tokens == 1


def test_open_payment_popup_refreshes_then_runs_callback():
    host = FakeHost()
    scheduler = ManualScheduler()
    state = TokenState(tokens=0)
    order = []

    def fetch(_):
        order.append("refresh")
        return 10

    cleanup = open_payment_popup(
        PopupLauncher(host, scheduler),
        TokenRefresher(state, "token", fetch),
        "bundle_10",
        lambda: order.append("caller"),
    )

    assert callable(cleanup)
    host.window.closed = True
    scheduler.advance(1)
    assert order == ["refresh", "caller"]
    assert state.tokens == 10
