from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

NavigationListener = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class LaunchResult:
    success: bool
    error: str | None = None


class ContentSurface(Protocol):
    """The browser/process host a session tracker enforces limits on."""

    def load_url(self, url: str) -> None: ...

    def go_back(self) -> None: ...

    def go_forward(self) -> None: ...

    def reload(self) -> None: ...

    def on_navigated(self, listener: NavigationListener) -> Callable[[], None]: ...

    def launch_native(self, command: str, item_id: int) -> LaunchResult: ...

    def show_time_warning(self, item_id: int, remaining_seconds: int) -> None: ...

    def show_time_limit_reached(self, item_id: int) -> None: ...


class RecordingSurface:
    """In-process surface for the headless kiosk agent: records what the core asked it to do."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.current_url: str | None = None
        self.history: list[str] = []
        self.warnings: list[tuple[int, int]] = []
        self.limits_reached: list[int] = []
        self._listeners: list[NavigationListener] = []
        self._cursor = -1

    def load_url(self, url: str) -> None:
        del self.history[self._cursor + 1:]
        self.history.append(url)
        self._cursor = len(self.history) - 1
        self._navigate(url)

    def go_back(self) -> None:
        if self._cursor > 0:
            self._cursor -= 1
            self._navigate(self.history[self._cursor])

    def go_forward(self) -> None:
        if self._cursor < len(self.history) - 1:
            self._cursor += 1
            self._navigate(self.history[self._cursor])

    def reload(self) -> None:
        if self.current_url is not None:
            self._navigate(self.current_url)

    def on_navigated(self, listener: NavigationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def launch_native(self, command: str, item_id: int) -> LaunchResult:
        # Native programs are out of reach for a headless host.
        return LaunchResult(success=False, error=f"Cannot launch {command!r} without a desktop host")

    def show_time_warning(self, item_id: int, remaining_seconds: int) -> None:
        self.logger.info("Time warning: item=%s remaining=%ss", item_id, remaining_seconds)
        self.warnings.append((item_id, remaining_seconds))

    def show_time_limit_reached(self, item_id: int) -> None:
        self.logger.info("Time limit reached: item=%s", item_id)
        self.limits_reached.append(item_id)

    def _navigate(self, url: str) -> None:
        self.current_url = url
        for listener in list(self._listeners):
            listener(url)
