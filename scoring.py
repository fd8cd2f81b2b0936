"""
Typing metrics for a single verse attempt.

Everything here is pure arithmetic over two strings and a clock. The
``TypingSession`` object mirrors what the practice page does on every
keystroke: the whole buffer is rescored from scratch, over-long input is
refused, and the completion callback fires once when the buffer matches
the verse exactly.
"""
import math
import time
from dataclasses import dataclass

# Standard typing-test convention: one "word" is five characters.
CHARS_PER_WORD = 5
POINTS_FACTOR = 0.1


class InputTooLongError(ValueError):
    """Typed text is longer than the verse it is scored against."""


def round_half_up(value: float) -> int:
    """Round like a typing test does (2.5 -> 3), not banker's rounding."""
    return int(math.floor(value + 0.5))


def words_typed(char_count: int) -> int:
    return round_half_up(char_count / CHARS_PER_WORD)


def calculate_wpm(char_count: int, elapsed_seconds: float) -> int:
    if elapsed_seconds <= 0:
        return 0
    minutes = elapsed_seconds / 60
    return round_half_up((char_count / CHARS_PER_WORD) / minutes)


def calculate_accuracy(target: str, typed: str) -> int:
    """Percentage of typed characters that match the verse at the same position."""
    if not typed:
        return 100
    correct = sum(1 for i, ch in enumerate(typed) if i < len(target) and ch == target[i])
    return round_half_up(correct / len(typed) * 100)


def calculate_progress(target: str, typed: str) -> int:
    if not target:
        return 0
    return round_half_up(len(typed) / len(target) * 100)


def calculate_points(wpm: float, accuracy: float) -> int:
    return round_half_up(wpm * accuracy / 100 * POINTS_FACTOR)


def score_attempt(target: str, typed: str, elapsed_seconds: float) -> dict:
    """Score one buffer without keeping any state between calls."""
    if len(typed) > len(target):
        raise InputTooLongError(
            f"input has {len(typed)} characters, verse has {len(target)}"
        )
    elapsed = max(0.0, float(elapsed_seconds))
    return {
        "wpm": calculate_wpm(len(typed), elapsed),
        "accuracy": calculate_accuracy(target, typed),
        "progress": calculate_progress(target, typed),
        "wordsTyped": words_typed(len(typed)),
        "completed": bool(target) and typed == target,
    }


@dataclass(frozen=True)
class SessionResult:
    wpm: int
    accuracy: int
    words_typed: int
    time_spent: int  # seconds

    @property
    def points(self) -> int:
        return calculate_points(self.wpm, self.accuracy)


class TypingSession:
    """In-progress attempt at one verse.

    ``on_complete`` is called as ``on_complete(wpm, accuracy, words_typed,
    time_spent)``; persisting the result is the caller's job. ``clock``
    must return seconds and is only read on input, so tests can drive it.
    """

    def __init__(self, target: str, on_complete=None, clock=time.monotonic):
        self.target = target
        self.on_complete = on_complete
        self._clock = clock
        self.reset()

    def reset(self):
        self.buffer = ""
        self.started_at = None
        self._finished_at = None
        self._result = None

    # ── Input ────────────────────────────────────────────────────────────────

    def update(self, value: str) -> bool:
        """Replace the buffer with ``value``. Returns False if it was refused."""
        if self.completed:
            return False
        if self.started_at is None:
            self.started_at = self._clock()
        if len(value) > len(self.target):
            return False
        self.buffer = value
        if self.target and self.buffer == self.target:
            self._finish()
        return True

    def press(self, char: str) -> bool:
        return self.update(self.buffer + char)

    def backspace(self) -> bool:
        return self.update(self.buffer[:-1])

    def _finish(self):
        self._finished_at = self._clock()
        elapsed = self.elapsed_seconds
        self._result = SessionResult(
            wpm=calculate_wpm(len(self.buffer), elapsed),
            accuracy=calculate_accuracy(self.target, self.buffer),
            words_typed=words_typed(len(self.buffer)),
            time_spent=round_half_up(elapsed),
        )
        if self.on_complete is not None:
            r = self._result
            self.on_complete(r.wpm, r.accuracy, r.words_typed, r.time_spent)

    # ── Live metrics ─────────────────────────────────────────────────────────

    @property
    def completed(self) -> bool:
        return self._result is not None

    @property
    def result(self):
        return self._result

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else self._clock()
        return max(0.0, end - self.started_at)

    @property
    def wpm(self) -> int:
        return calculate_wpm(len(self.buffer), self.elapsed_seconds)

    @property
    def accuracy(self) -> int:
        return calculate_accuracy(self.target, self.buffer)

    @property
    def progress(self) -> int:
        return calculate_progress(self.target, self.buffer)

    def snapshot(self) -> dict:
        return {
            "wpm": self.wpm,
            "accuracy": self.accuracy,
            "progress": self.progress,
            "elapsedSeconds": round(self.elapsed_seconds, 3),
            "completed": self.completed,
        }
