"""协作式取消信号。

AbortSignal 在一轮对话内共享：UI 线程调用 abort()，CompletionClient 在每个
挂起点之前检查 aborted，Provider 通过 add_listener 注册关闭底层连接的回调，
从而让正在进行的网络读取尽快结束。
"""

import threading
from typing import Callable, List


class AbortSignal:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        """触发取消；重复调用无副作用。"""

        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            listeners = list(self._listeners)
            self._listeners.clear()
        for callback in listeners:
            callback()

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """注册取消回调，返回注销函数。已取消时立即执行回调。"""

        with self._lock:
            if not self._event.is_set():
                self._listeners.append(callback)
                return lambda: self._remove(callback)
        callback()
        return lambda: None

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
