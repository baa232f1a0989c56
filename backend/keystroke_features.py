"""
Keystroke timing feature extraction.

This module turns raw key press/release events into timing series:
- Dwell times (how long each key is held)
- Flight times (release of one key to press of the next, negative on overlap)
- Down-down latencies (press to press)

It also provides the capture-side recorder that assembles raw events into an
ordered, position-indexed list for a known target string.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from config import TIMING_CLAMPS

logger = logging.getLogger(__name__)


@dataclass
class RawKeystroke:
    """One key press/release pair attributed to an expected character."""
    char: str
    code: str
    key_down_time: float
    key_up_time: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'char': self.char,
            'code': self.code,
            'key_down_time': self.key_down_time,
            'key_up_time': self.key_up_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawKeystroke":
        return cls(
            char=data['char'],
            code=data.get('code', ''),
            key_down_time=float(data['key_down_time']),
            key_up_time=float(data['key_up_time']),
        )


@dataclass
class TimingVector:
    """Derived timing series for one typed attempt."""
    dwell_times: List[float] = field(default_factory=list)
    flight_times: List[float] = field(default_factory=list)
    dd_latencies: List[float] = field(default_factory=list)
    total_time: float = 0.0
    chars: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dwell_times': list(self.dwell_times),
            'flight_times': list(self.flight_times),
            'dd_latencies': list(self.dd_latencies),
            'total_time': self.total_time,
            'chars': list(self.chars),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimingVector":
        return cls(
            dwell_times=[float(v) for v in data.get('dwell_times', [])],
            flight_times=[float(v) for v in data.get('flight_times', [])],
            dd_latencies=[float(v) for v in data.get('dd_latencies', [])],
            total_time=float(data.get('total_time', 0.0)),
            chars=list(data.get('chars', [])),
        )


@dataclass
class CalibrationAttempt:
    """One recorded calibration typing of a target phrase."""
    timings: TimingVector
    timestamp: float = field(default_factory=time.time)
    is_valid: bool = True


def extract_timings(keystrokes: Sequence[RawKeystroke]) -> TimingVector:
    """
    Extract timing features from raw keystroke data.

    Out-of-range values are clamped to fixed bounds, never rejected:
    dwell to [10, 1000] ms, flight to [-200, 2000] ms and down-down latency
    to [10, 3000] ms.

    Args:
        keystrokes: Ordered keystrokes, one per character of the target

    Returns:
        TimingVector with N dwell times and N-1 flight/dd values
    """
    n = len(keystrokes)
    if n == 0:
        return TimingVector()

    downs = np.array([k.key_down_time for k in keystrokes], dtype=np.float64)
    ups = np.array([k.key_up_time for k in keystrokes], dtype=np.float64)

    dwell = np.clip(ups - downs, TIMING_CLAMPS['min_dwell'], TIMING_CLAMPS['max_dwell'])
    flight = np.clip(
        downs[1:] - ups[:-1],
        TIMING_CLAMPS['min_flight'],
        TIMING_CLAMPS['max_flight']
    )
    dd = np.clip(
        downs[1:] - downs[:-1],
        TIMING_CLAMPS['min_dwell'],
        TIMING_CLAMPS['max_flight'] + TIMING_CLAMPS['max_dwell']
    )

    return TimingVector(
        dwell_times=dwell.tolist(),
        flight_times=flight.tolist(),
        dd_latencies=dd.tolist(),
        total_time=float(ups[-1] - downs[0]),
        chars=[k.char for k in keystrokes],
    )


class KeystrokeRecorder:
    """
    Assemble raw key events for a known target string.

    Each press is attributed to the character expected at the current
    position, not to what was typed, so corrected positions keep their slot.
    """

    def __init__(self, target_text: str):
        self.target_text = target_text
        self.keystrokes: List[RawKeystroke] = []
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._finished = False

    @property
    def position(self) -> int:
        return len(self.keystrokes)

    @property
    def is_complete(self) -> bool:
        return self.position >= len(self.target_text)

    def key_down(self, code: str, timestamp: float) -> bool:
        """Record a press. Returns False when the press is ignored."""
        if self._finished or self.position + len(self._pending) >= len(self.target_text):
            return False

        expected = self.target_text[self.position + len(self._pending)]
        self._pending[code] = {'time': timestamp, 'char': expected}
        return True

    def key_up(self, code: str, timestamp: float) -> Optional[RawKeystroke]:
        """Complete a pending press and append it at the next position."""
        pending = self._pending.pop(code, None)
        if pending is None:
            return None

        if self.is_complete:
            return None

        keystroke = RawKeystroke(
            char=pending['char'],
            code=code,
            key_down_time=pending['time'],
            key_up_time=timestamp,
        )
        self.keystrokes.append(keystroke)
        # Overlapping keys can be released out of order; positions follow presses.
        if len(self.keystrokes) > 1 and self.keystrokes[-2].key_down_time > keystroke.key_down_time:
            self.keystrokes.sort(key=lambda k: k.key_down_time)
        return keystroke

    def backspace(self, count: int = 1) -> None:
        """Drop the last `count` recorded keystrokes."""
        if self._finished or count <= 0:
            return
        self.keystrokes = self.keystrokes[:max(0, self.position - count)]

    def finish(self, now: Optional[float] = None) -> List[RawKeystroke]:
        """
        Close the capture and return the keystrokes.

        Keystrokes whose release was never seen, or is not after the press,
        get `now` as release time.
        """
        if now is None:
            now = time.perf_counter() * 1000.0

        for keystroke in self.keystrokes:
            if not keystroke.key_up_time or keystroke.key_up_time <= keystroke.key_down_time:
                keystroke.key_up_time = now

        if self._pending:
            logger.debug(f"Discarding {len(self._pending)} unreleased key presses")
            self._pending.clear()

        self._finished = True
        return list(self.keystrokes)

    def extract(self) -> TimingVector:
        return extract_timings(self.keystrokes)

    def reset(self) -> None:
        self.keystrokes = []
        self._pending.clear()
        self._finished = False
