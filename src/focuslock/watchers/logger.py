import logging
from collections import deque
from pathlib import Path

__all__ = ["DequeHandler", "get_logger", "logger", "setup_logging"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("focuslock")
logger.setLevel(logging.INFO)


class DequeHandler(logging.Handler):
    """モニタリング画面用に直近のログをメモリに保持するハンドラ."""

    def __init__(self, buffer: deque[str]) -> None:
        super().__init__()
        self.buffer = buffer
        self.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        self.buffer.append(self.format(record))


def get_logger(name: str) -> logging.Logger:
    """``focuslock.<name>`` の子ロガーを返す."""
    return logger.getChild(name)


def setup_logging(log_dir: str | Path = "./log", filename: str = "focuslock.log") -> Path:
    """ファイルハンドラを一度だけ追加する. 戻り値はログファイルのパス."""
    path = Path(log_dir) / filename
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(
            handler.baseFilename
        ) == path.resolve():
            return path
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(fh)
    return path
