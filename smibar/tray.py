"""Menu-bar presentation: title formatting and the tray capability surface."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

from smibar.config import DISPLAY_MODES
from smibar.events import EVENT_META, EVENT_SNAPSHOT, Event
from smibar.models import ConnectionStatus

logger = logging.getLogger(__name__)

APP_TITLE = "NVSmiBar"
SPARK_CHARS = "▁▂▃▄▅▆▇█"


@dataclass(frozen=True)
class TrayGauge:
    """Values the graphic display mode draws as a status image."""

    temp: int = 0
    util: int = 0
    mem_used: int = 0
    mem_total: int = 0
    status: str = ConnectionStatus.IDLE.value


class TrayPresenter(Protocol):
    """What a tray/menu-bar implementation must provide."""

    def set_title(self, title: str) -> None:
        ...

    def set_status_image(self, gauge: TrayGauge) -> None:
        ...

    def show(self) -> None:
        ...

    def hide(self) -> None:
        ...


class LoggingPresenter:
    """Headless presenter: keeps the current title and logs changes."""

    def __init__(self) -> None:
        self.title = APP_TITLE
        self.gauge: Optional[TrayGauge] = None
        self.visible = False

    def set_title(self, title: str) -> None:
        if title != self.title:
            logger.debug(f"Tray title: {title}")
        self.title = title

    def set_status_image(self, gauge: TrayGauge) -> None:
        self.gauge = gauge

    def show(self) -> None:
        self.visible = True

    def hide(self) -> None:
        self.visible = False


def spark_char(value: float) -> str:
    v = max(0.0, min(100.0, value))
    return SPARK_CHARS[min(int(v / 100 * 8), 7)]


def vram_gb(mib: int) -> str:
    if mib < 0:
        return "--"
    return f"{mib / 1024:.1f}"


def _pct(value: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(max(value, 0) / total * 100 + 0.5)


def format_tray_title(
    gpus: Sequence[Mapping[str, Any]],
    status: str,
    mode: str = "standard",
) -> str:
    """Render the menu-bar title for a snapshot (list of gpu:data dicts)."""
    if status == ConnectionStatus.IDLE.value:
        return APP_TITLE
    if status == ConnectionStatus.CONNECTING.value:
        return "NV ···"
    if status == ConnectionStatus.ERROR.value:
        return "NV ⚠"
    if not gpus:
        return "NV ···"

    g = gpus[0]
    mem_pct = _pct(g["memUsed"], g["memTotal"])
    power_pct = _pct(g["powerDraw"], g["powerLimit"])

    if mode == "minimal":
        value = f"{g['temp']}°"
    elif mode == "compact":
        value = f"{g['temp']}° · {g['util']}%"
    elif mode == "spark":
        value = (
            f"{spark_char(g['util'])}{spark_char(mem_pct)}{spark_char(power_pct)} {g['temp']}°"
        )
    elif mode == "multi":
        value = " │ ".join(f"G{gpu['index']}:{gpu['temp']}°·{gpu['util']}%" for gpu in gpus)
    elif mode == "graphic":
        value = (
            f"{g['temp']}° · {g['util']}% | {vram_gb(g['memUsed'])}/{vram_gb(g['memTotal'])}G"
        )
    else:
        value = f"{g['temp']}° · {g['util']}% · {vram_gb(g['memUsed'])}G"

    if status == ConnectionStatus.STALE.value:
        return f"{value} !"
    return value


class TrayController:
    """Keeps a TrayPresenter in sync with the supervisor's events.

    Register on_event with the EventHub. The controller holds the supervisor
    it was built with, so native callbacks (clicks) reach the session through
    this object rather than through any global.
    """

    def __init__(self, supervisor, presenter: TrayPresenter, mode: str = "standard"):
        if mode not in DISPLAY_MODES:
            raise ValueError(f"Unknown display mode: {mode}")
        self.supervisor = supervisor
        self.presenter = presenter
        self.mode = mode
        self._lock = threading.Lock()
        self._gpus: list[dict[str, Any]] = []
        self._status = ConnectionStatus.IDLE.value
        self._visible = False

    def on_event(self, event: Event) -> None:
        if event.name == EVENT_SNAPSHOT:
            with self._lock:
                self._gpus = list(event.payload)
        elif event.name == EVENT_META:
            with self._lock:
                self._status = event.payload["status"]
        else:
            return
        self.refresh()

    def set_mode(self, mode: str) -> None:
        if mode not in DISPLAY_MODES:
            raise ValueError(f"Unknown display mode: {mode}")
        self.mode = mode
        self.refresh()

    def _current(self) -> tuple[list[dict[str, Any]], str]:
        with self._lock:
            return list(self._gpus), self._status

    def title(self, mode: Optional[str] = None) -> str:
        gpus, status = self._current()
        return format_tray_title(gpus, status, mode or self.mode)

    def refresh(self) -> None:
        gpus, status = self._current()

        if self.mode != "graphic":
            self.presenter.set_title(format_tray_title(gpus, status, self.mode))
            return

        connected = status in (ConnectionStatus.LIVE.value, ConnectionStatus.STALE.value)
        if gpus and connected:
            g = gpus[0]
            gauge = TrayGauge(g["temp"], g["util"], g["memUsed"], g["memTotal"], status)
        else:
            gauge = TrayGauge(status=status)
        self.presenter.set_status_image(gauge)

    def on_status_item_clicked(self) -> None:
        """Toggle the popup; opening it while in error retries right away."""
        with self._lock:
            self._visible = not self._visible
            visible = self._visible
        if visible:
            self.presenter.show()
            if self.supervisor.metadata().status == ConnectionStatus.ERROR:
                self.supervisor.retry_now()
        else:
            self.presenter.hide()
