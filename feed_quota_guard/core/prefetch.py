"""
Predictive prefetch.

Learns which targets are accessed often, and at which hour of day, and
predicts the ones worth warming in the cache before they are asked for.

Prediction Sources:
- Frequency: accesses within the analysis window, confidence = count / 10
- Time pattern: accesses in the retained history that happened during the
  upcoming hour of day, confidence = count / 5
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from .clock import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_WINDOW_MINUTES = 120
DEFAULT_PATTERN_PERIOD_HOURS = 24
DEFAULT_CONFIDENCE_THRESHOLD = 0.6
DEFAULT_MAX_ITEMS = 20
MAX_ACCESS_RECORDS = 1000

FREQUENCY_SATURATION = 10
TIME_PATTERN_SATURATION = 5

ContentKey = Tuple[str, str, str]


@dataclass(frozen=True)
class PrefetchPrediction:
    """A target predicted to be needed soon."""
    content_id: str
    platform: str
    content_type: str
    confidence: float
    source: str

    @property
    def key(self) -> ContentKey:
        return (self.platform, self.content_type, self.content_id)


class PrefetchPredictor:
    """Access-pattern based prediction of targets to warm.

    Each prediction is handed out once by ``take``; a target becomes
    eligible again after it is accessed anew.
    """

    def __init__(
        self,
        enabled: bool = True,
        analysis_window_minutes: int = DEFAULT_ANALYSIS_WINDOW_MINUTES,
        pattern_period_hours: int = DEFAULT_PATTERN_PERIOD_HOURS,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        max_items: int = DEFAULT_MAX_ITEMS,
        clock: Clock = utc_now,
    ):
        if not 0 <= confidence_threshold <= 1:
            raise ValueError("confidence_threshold must be between 0 and 1")
        if max_items < 0:
            raise ValueError("max_items cannot be negative")
        self.enabled = enabled
        self.analysis_window = timedelta(minutes=analysis_window_minutes)
        self.pattern_period = timedelta(hours=pattern_period_hours)
        self.confidence_threshold = confidence_threshold
        self.max_items = max_items
        self._clock = clock
        self._lock = threading.Lock()
        self._accesses: List[Tuple[datetime, ContentKey]] = []
        self._consumed: Set[ContentKey] = set()

    def record_access(
        self,
        platform: str,
        content_type: str,
        content_id: str,
        at: Optional[datetime] = None,
    ) -> None:
        key = (platform, content_type, content_id)
        at = at or self._clock()
        with self._lock:
            self._accesses.append((at, key))
            self._consumed.discard(key)
            self._prune(at)

    def predict(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[PrefetchPrediction]:
        """Merged predictions at or above the threshold, most confident first.

        A target predicted by both sources keeps its higher confidence.
        """
        if not self.enabled:
            return []
        now = now or self._clock()
        limit = self.max_items if limit is None else min(limit, self.max_items)

        with self._lock:
            self._prune(now)
            accesses = list(self._accesses)
            consumed = set(self._consumed)

        window_start = now - self.analysis_window
        frequency = Counter(key for at, key in accesses if at >= window_start)
        next_hour = (now.hour + 1) % 24
        hourly = Counter(key for at, key in accesses if at.astimezone(now.tzinfo).hour == next_hour)

        best: Dict[ContentKey, PrefetchPrediction] = {}
        candidates = [
            (key, min(1.0, count / FREQUENCY_SATURATION), "frequency")
            for key, count in frequency.items()
        ] + [
            (key, min(1.0, count / TIME_PATTERN_SATURATION), f"time_pattern:{next_hour:02d}:00")
            for key, count in hourly.items()
        ]
        for key, confidence, source in candidates:
            if key in consumed or confidence < self.confidence_threshold:
                continue
            current = best.get(key)
            if current is None or confidence > current.confidence:
                best[key] = PrefetchPrediction(
                    content_id=key[2],
                    platform=key[0],
                    content_type=key[1],
                    confidence=confidence,
                    source=source,
                )

        predictions = sorted(best.values(), key=lambda p: (-p.confidence, p.key))
        return predictions[:limit]

    def take(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[PrefetchPrediction]:
        """Return predictions and mark them consumed."""
        predictions = self.predict(now, limit)
        with self._lock:
            self._consumed.update(p.key for p in predictions)
        if predictions:
            logger.debug("Handing out %d prefetch predictions", len(predictions))
        return predictions

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.pattern_period
        self._accesses = [(at, key) for at, key in self._accesses if at >= cutoff]
        del self._accesses[:-MAX_ACCESS_RECORDS]
