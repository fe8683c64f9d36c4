from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

log = logging.getLogger("runloop.capture")


class ScreenCaptureError(RuntimeError):
    pass


@dataclass(frozen=True)
class Screenshot:
    png: bytes
    width: int
    height: int
    monitor_index: int = 1
    monitor: dict[str, Any] = field(default_factory=dict)
    captured_at: float = field(default_factory=time.time)
    media_type: str = "image/png"


class Capturer(Protocol):
    def capture(self) -> Screenshot: ...


class ScreenCapturer:
    """Grab one monitor with mss and downscale it for the model."""

    def __init__(self, monitor_index: int = 1, max_width: int | None = 1280):
        # mss monitors are 1-based; 1 is "primary"
        self._monitor_index = monitor_index
        self._max_width = max_width
        self._sct = None

    def capture(self) -> Screenshot:
        try:
            import mss
            import mss.tools
        except Exception as exc:
            raise ScreenCaptureError(f"screenshot capture failed: mss unavailable ({exc})") from exc

        if self._sct is None:
            try:
                self._sct = mss.mss()
            except Exception as exc:
                raise ScreenCaptureError(f"screenshot capture failed: {exc}") from exc

        monitors = self._sct.monitors
        if self._monitor_index < 1 or self._monitor_index >= len(monitors):
            raise ScreenCaptureError(
                f"screenshot capture failed: invalid monitor_index={self._monitor_index}, "
                f"valid range is 1..{len(monitors) - 1}"
            )

        mon = dict(monitors[self._monitor_index])
        try:
            shot = self._sct.grab(mon)
        except Exception as exc:
            raise ScreenCaptureError(f"screenshot capture failed: {exc}") from exc
        png = mss.tools.to_png(shot.rgb, shot.size)

        width, height = shot.size
        if self._max_width is not None and width > self._max_width:
            png, width, height = _downscale_png(png, self._max_width)

        return Screenshot(
            png=png,
            width=width,
            height=height,
            monitor_index=self._monitor_index,
            monitor=mon,
        )


def _downscale_png(png: bytes, max_width: int) -> tuple[bytes, int, int]:
    from PIL import Image

    img = Image.open(io.BytesIO(png))
    if img.width <= max_width:
        return png, img.width, img.height

    new_h = max(1, int(img.height * (max_width / img.width)))
    img = img.resize((max_width, new_h), Image.LANCZOS)
    out = io.BytesIO()
    img.save(out, format="PNG", optimize=True)
    return out.getvalue(), img.width, img.height
