import base64
import time
from io import BytesIO
from typing import cast

import mss  # pyright: ignore[reportMissingImports]
from mss.exception import ScreenShotError  # pyright: ignore[reportMissingImports]
from PIL import Image  # pyright: ignore[reportMissingImports]

from focuslock.watchers.logger import logger

JPEG_QUALITY = 80
MAX_WIDTH = 1280


def encode_jpeg(
    image: Image.Image, quality: int = JPEG_QUALITY, max_width: int = MAX_WIDTH
) -> str:
    """画像を縮小して JPEG の base64 文字列にする."""
    if image.width > max_width:
        height = round(image.height * max_width / image.width)
        image = image.resize((max_width, height))
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return base64.b64encode(buffer.getvalue()).decode()


class ScreenCapture:
    """スクリーンキャプチャを取得するクラス."""

    def __init__(self, bbox: dict[str, int] | None = None) -> None:
        """初期化する

        Args:
        bbox: キャプチャ領域 {"top": int, "left": int, "width": int, "height": int}
             Noneの場合は最初のキャプチャ時にプライマリモニターを使う

        """
        self.bbox = bbox
        self.last_capture_time: float = 0.0

    def _get_primary_monitor_bbox(self, sct: "mss.base.MSSBase") -> dict[str, int]:
        """プライマリモニターの実際の解像度を取得"""
        monitors = sct.monitors
        chosen = cast(
            "dict[str, int]",
            monitors[1] if len(monitors) > 1 else monitors[0],
        )
        logger.info("Monitors detected: %s | chosen=%s", len(monitors) - 1, chosen)
        return chosen

    def capture_as_base64(self) -> str | None:
        """スクリーンキャプチャを JPEG の base64 で返す. 失敗時は None."""
        try:
            with mss.mss() as sct:
                if self.bbox is None:
                    self.bbox = self._get_primary_monitor_bbox(sct)
                screenshot = sct.grab(self.bbox)
                image = Image.frombytes(
                    "RGB", screenshot.size, screenshot.bgra, "raw", "BGRX"
                )
        except (ScreenShotError, OSError):
            logger.exception("screen capture failed")
            return None

        img_str = encode_jpeg(image)
        self.last_capture_time = time.time()
        return img_str
