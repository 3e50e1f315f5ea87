"""Payment popup coordination.

The launcher opens the checkout page in a separate window, the closure watcher
polls that window until it is closed, and the token refresher re-reads the
balance from ``GET /tokens`` once it is. Closing the window says nothing about
whether the payment went through; the balance read afterwards is the only
source of truth.

Browser capabilities are supplied by a host object:

* ``screen_width`` / ``screen_height``
* ``open(url, name, features)`` returning a window or ``None`` when blocked.
  A window exposes ``closed`` and ``close()``.
* ``notify(message)`` to tell the user something synchronously.

Timers come from a scheduler with ``set_interval(callback, seconds)`` and an
idempotent ``clear_interval(handle)``. A scheduler may also run a tick
synchronously from inside ``set_interval``.
"""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from datetime import datetime, timezone
from typing import Any, Callable

from . import settings

logger = logging.getLogger("mockview.popup")

POPUP_WINDOW_NAME = "payment"
POPUP_BLOCKED_MESSAGE = "The payment window was blocked. Allow pop-ups for this site and try again."


class IntervalTimer(threading.Thread):
    def __init__(self, callback: Callable[[], None], seconds: float):
        super().__init__(daemon=True, name="popup-interval")
        self._callback = callback
        self._seconds = seconds
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._seconds):
            try:
                self._callback()
            except Exception:
                logger.exception("Interval callback failed; stopping timer.")
                self._stopped.set()
                raise

    def cancel(self) -> None:
        self._stopped.set()

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()


class ThreadingScheduler:
    """Runs each interval on its own daemon thread."""

    def set_interval(self, callback: Callable[[], None], seconds: float) -> IntervalTimer:
        timer = IntervalTimer(callback, seconds)
        timer.start()
        return timer

    def clear_interval(self, handle: IntervalTimer | None) -> None:
        if handle is not None:
            handle.cancel()


class ClosureWatcher:
    """Polls a popup window and fires ``on_close`` once when it closes.

    The timer starts in the constructor. A tick that finds the window closed
    cancels the timer before running the callback, so the callback runs at most
    once. ``cleanup()`` cancels the timer and closes a still-open window without
    running the callback; it is safe to call any number of times. Exceptions
    raised by the callback propagate to whoever drives the tick.
    """

    def __init__(
        self,
        window: Any,
        on_close: Callable[[], None],
        scheduler: Any = None,
        interval: float | None = None,
    ):
        self._window = window
        self._on_close = on_close
        self._scheduler = scheduler or ThreadingScheduler()
        self._interval = settings.POPUP_POLL_INTERVAL_SECONDS if interval is None else interval
        self._lock = threading.RLock()
        self._finished = False
        self._handle: Any = None
        # Held so a threaded tick cannot run before the handle is stored.
        with self._lock:
            handle = self._scheduler.set_interval(self._tick, self._interval)
            self._handle = handle
            if self._finished:
                # A synchronous tick already fired before the handle existed.
                self._scheduler.clear_interval(handle)

    @property
    def active(self) -> bool:
        with self._lock:
            return not self._finished

    def _tick(self) -> None:
        with self._lock:
            if self._finished or not self._window.closed:
                return
            self._finished = True
            if self._handle is not None:
                self._scheduler.clear_interval(self._handle)
            self._window = None
        logger.debug("Payment popup closed; running completion callback.")
        self._on_close()

    def cleanup(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            if self._handle is not None:
                self._scheduler.clear_interval(self._handle)
            window, self._window = self._window, None
        if not window.closed:
            window.close()
        logger.debug("Payment popup watcher cleaned up.")


def popup_geometry(screen_width: float, screen_height: float, width: int, height: int) -> dict[str, float]:
    # Offsets go negative when the popup is larger than the screen.
    return {
        "width": width,
        "height": height,
        "left": (screen_width - width) / 2,
        "top": (screen_height - height) / 2,
    }


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def window_features(geometry: dict[str, float]) -> str:
    return ",".join(
        [
            f"width={_format_number(geometry['width'])}",
            f"height={_format_number(geometry['height'])}",
            f"left={_format_number(geometry['left'])}",
            f"top={_format_number(geometry['top'])}",
            "resizable=no",
            "scrollbars=no",
        ]
    )


def build_checkout_url(package_id: str | None = None, checkout_path: str | None = None) -> str:
    path = checkout_path or settings.CHECKOUT_PATH
    if package_id:
        return f"{path}?packageId={package_id}"
    return path


class PopupLauncher:
    def __init__(
        self,
        host: Any,
        scheduler: Any = None,
        poll_interval: float | None = None,
        checkout_path: str | None = None,
    ):
        self.host = host
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.checkout_path = checkout_path

    def open(
        self,
        package_id: str | None = None,
        on_close: Callable[[], None] | None = None,
        width: int = settings.POPUP_WIDTH,
        height: int = settings.POPUP_HEIGHT,
    ) -> Any:
        """Opens the checkout popup.

        Returns ``None`` when the host refused to open a window, the window
        itself when there is no ``on_close``, and otherwise the cleanup
        function of the watcher tracking it.
        """
        geometry = popup_geometry(self.host.screen_width, self.host.screen_height, width, height)
        url = build_checkout_url(package_id, self.checkout_path)
        window = self.host.open(url, POPUP_WINDOW_NAME, window_features(geometry))
        if not window:
            logger.warning("Payment popup for %s was blocked.", url)
            self.host.notify(POPUP_BLOCKED_MESSAGE)
            return None

        logger.info("Opened payment popup at %s", url)
        if on_close is None:
            return window
        watcher = ClosureWatcher(window, on_close, self.scheduler, self.poll_interval)
        return watcher.cleanup


class TokenState:
    """Cached token balance shared by everything that displays it."""

    def __init__(self, tokens: int = 0):
        self.tokens = tokens
        self.is_loading = False
        self.last_fetched: datetime | None = None
        self._lock = threading.Lock()

    def begin_refresh(self) -> bool:
        with self._lock:
            if self.is_loading:
                return False
            self.is_loading = True
            return True

    def finish_refresh(self, tokens: int | None = None) -> None:
        with self._lock:
            if tokens is not None:
                self.tokens = tokens
                self.last_fetched = datetime.now(timezone.utc)
            self.is_loading = False

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "tokens": self.tokens,
                "is_loading": self.is_loading,
                "last_fetched": self.last_fetched,
            }


def fetch_token_balance(auth_token: str, base_url: str | None = None, timeout: float = 10) -> int:
    url = f"{(base_url or settings.API_BASE_URL).rstrip('/')}/tokens"
    req = urllib.request.Request(
        url,
        method="GET",
        headers={"Authorization": f"Bearer {auth_token}", "Accept": "application/json"},
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        payload = json.loads(resp.read().decode("utf-8", errors="ignore") or "{}")
    return int(payload["tokens"])


class TokenRefresher:
    """Replaces the cached balance with the server's.

    Overlapping calls collapse into the one already in flight. A failed fetch
    is logged and the previous balance stays in place.
    """

    def __init__(
        self,
        state: TokenState,
        auth_token: str,
        fetch_balance: Callable[[str], int] | None = None,
    ):
        self.state = state
        self.auth_token = auth_token
        self.fetch_balance = fetch_balance or fetch_token_balance

    def refresh(self) -> None:
        if not self.state.begin_refresh():
            logger.debug("Token refresh already in flight; skipping.")
            return
        tokens = None
        try:
            tokens = int(self.fetch_balance(self.auth_token))
        except (urllib.error.URLError, TimeoutError, ValueError, KeyError) as exc:
            logger.warning("Token balance refresh failed: %s", exc)
        except Exception:
            logger.exception("Unexpected error refreshing token balance.")
        finally:
            self.state.finish_refresh(tokens)

    __call__ = refresh


def open_payment_popup(
    launcher: PopupLauncher,
    refresher: TokenRefresher,
    package_id: str | None = None,
    on_close: Callable[[], None] | None = None,
) -> Callable[[], None] | None:
    """Opens checkout and refreshes the balance, then runs ``on_close``, after the popup closes."""

    def completed() -> None:
        refresher.refresh()
        if on_close is not None:
            on_close()

    return launcher.open(package_id, completed)
