# core/observers.py
"""
Post-run observers (signal capture, notifications, downstream exports).

Observers run synchronously after a batch completes. A failing observer is
logged and reported back to the runner; it never fails the run.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

from ..models.batch import CalculationBatch
from ..models.reports import CalculationSummary

logger = logging.getLogger(__name__)


class BatchObserver(ABC):
    @abstractmethod
    def on_batch_completed(self, batch: CalculationBatch, summary: CalculationSummary) -> None:
        ...


class CallbackObserver(BatchObserver):
    """Adapts a plain function to the observer interface."""

    def __init__(self, callback: Callable[[CalculationBatch, CalculationSummary], None], name: Optional[str] = None):
        self.callback = callback
        self.name = name or getattr(callback, "__name__", "callback")

    def on_batch_completed(self, batch: CalculationBatch, summary: CalculationSummary) -> None:
        self.callback(batch, summary)

    def __repr__(self) -> str:
        return f"CallbackObserver({self.name})"


def notify_observers(
    observers: Sequence[BatchObserver], batch: CalculationBatch, summary: CalculationSummary
) -> List[str]:
    """Call every observer in order; returns one warning per failure."""
    warnings: List[str] = []
    for observer in observers:
        try:
            observer.on_batch_completed(batch, summary)
        except Exception as e:
            warning = f"Observer {observer!r} failed for batch {batch.batch_id}: {e}"
            logger.warning(warning, exc_info=True)
            warnings.append(warning)
    return warnings
