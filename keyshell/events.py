from itertools import count
from typing import Any, Callable, Dict


class Event:
    """A named callback list. Callbacks run in the order they were connected."""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: Dict[int, Callable[..., Any]] = {}
        self._ids = count(1)

    def connect(self, callback: Callable[..., Any]) -> int:
        handle = next(self._ids)
        self._callbacks[handle] = callback
        return handle

    def disconnect(self, handle: int) -> None:
        self._callbacks.pop(handle, None)

    def disconnect_all(self) -> None:
        self._callbacks.clear()

    def emit(self, *args: Any) -> None:
        for callback in list(self._callbacks.values()):
            callback(*args)

    def __len__(self) -> int:
        return len(self._callbacks)

    def __repr__(self) -> str:
        return f"<Event {self.name} ({len(self)} callbacks)>"
