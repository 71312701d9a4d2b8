"""In-process signals consumed by the chart UI."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    SYNC_COMPLETE = "sync_complete"
    BATCH_PROGRESS = "batch_progress"
    SAVE_COMPLETE = "save_complete"


@dataclass
class SyncSignal:
    """Notification about one series; carries a count or an error."""

    kind: SignalKind
    series_id: str
    count: Optional[int] = None
    estimated_total: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


Listener = Callable[[SyncSignal], None]


class SignalBus:
    """Dispatches signals to listeners registered per kind."""

    def __init__(self):
        self._listeners: Dict[SignalKind, List[Listener]] = defaultdict(list)

    def connect(self, kind: SignalKind, listener: Listener) -> None:
        self._listeners[kind].append(listener)

    def disconnect(self, kind: SignalKind, listener: Listener) -> bool:
        try:
            self._listeners[kind].remove(listener)
        except ValueError:
            return False
        return True

    def emit(self, signal: SyncSignal) -> None:
        for listener in list(self._listeners[signal.kind]):
            try:
                listener(signal)
            except Exception as e:
                logger.error(
                    f"Listener for {signal.kind.value} failed on {signal.series_id}: {e}",
                    exc_info=True,
                )
