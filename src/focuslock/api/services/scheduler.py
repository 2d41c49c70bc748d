"""Single-owner dispatch loops and cancellable timers on asyncio."""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from focuslock.model.messages import TimerFired
from focuslock.watchers.logger import get_logger

logger = get_logger("scheduler")

Handler = Callable[[Any], Any]


class ScheduledTask:
    """``call_later`` / ``call_every`` が返すキャンセル可能なハンドル."""

    def __init__(
        self,
        handle: asyncio.TimerHandle | asyncio.Task[None],
        on_cancel: Callable[["ScheduledTask"], None] | None = None,
    ) -> None:
        self._handle = handle
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._handle.cancel()
            if self._on_cancel is not None:
                self._on_cancel(self)


class Timers:
    """イベントループ上のタイマーを管理する. ``cancel_all`` で全て止める."""

    def __init__(self) -> None:
        self._tasks: set[ScheduledTask] = set()

    @property
    def pending(self) -> int:
        """まだ発火もキャンセルもされていないタイマーの数."""
        return len(self._tasks)

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        loop = asyncio.get_running_loop()
        task: ScheduledTask

        def fire() -> None:
            self._tasks.discard(task)
            callback()

        task = ScheduledTask(loop.call_later(delay, fire), self._tasks.discard)
        self._tasks.add(task)
        return task

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        async def repeat() -> None:
            while True:
                await asyncio.sleep(interval)
                callback()

        task = ScheduledTask(
            asyncio.get_running_loop().create_task(repeat()), self._tasks.discard
        )
        self._tasks.add(task)
        return task

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class Actor:
    """受信キューを1つのループで処理する. メッセージ型ごとにハンドラは1つだけ.

    ハンドラは同期関数でもコルーチン関数でもよい。``request`` は
    ハンドラの戻り値を待って返す。
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: dict[type, Handler] = {}
        self._queue: asyncio.Queue[tuple[Any, asyncio.Future[Any] | None]] = (
            asyncio.Queue()
        )
        self._task: asyncio.Task[None] | None = None

    def register(self, message_type: type, handler: Handler) -> None:
        if message_type in self._handlers:
            msg = f"{self.name}: handler for {message_type.__name__} already registered"
            raise ValueError(msg)
        self._handlers[message_type] = handler

    def post(self, message: Any) -> None:
        self._queue.put_nowait((message, None))

    async def request(self, message: Any) -> Any:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((message, future))
        return await future

    def timer_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """タイマーのコールバックを自分のループ内で実行させるラッパー."""
        return lambda: self.post(TimerFired(callback))

    async def _dispatch(self, message: Any) -> Any:
        if isinstance(message, TimerFired):
            return message.callback()
        handler = self._handlers.get(type(message))
        if handler is None:
            logger.warning("%s: no handler for %s", self.name, type(message).__name__)
            return None
        result = handler(message)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run(self) -> None:
        while True:
            message, future = await self._queue.get()
            try:
                result = await self._dispatch(message)
            except Exception as e:
                logger.exception("%s: handler failed for %s", self.name, message)
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self.run(), name=f"actor-{self.name}"
            )
        return self._task

    async def join(self) -> None:
        """キューが空になるまで待つ."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
