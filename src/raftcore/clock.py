import random
import time


class MonotonicClock:
    def now(self):
        return time.monotonic()


class ManualClock:
    """A clock that only moves when told to, for driving servers deterministically"""

    def __init__(self, start=0.0):
        self._now = start

    def now(self):
        return self._now

    def advance(self, seconds):
        self._now += seconds


class ElectionTimer:
    """Randomized election deadline, redrawn on every reset so split votes don't repeat"""

    def __init__(self, clock, min_timeout, max_timeout, rng=None):
        if not 0 < min_timeout <= max_timeout:
            raise ValueError(f"invalid election timeout range [{min_timeout}, {max_timeout}]")
        self._clock = clock
        self.min_timeout = min_timeout
        self.max_timeout = max_timeout
        self._rng = rng if rng is not None else random.Random()
        self.timeout = None
        self.deadline = None
        self.reset()

    def reset(self):
        self.timeout = self._rng.uniform(self.min_timeout, self.max_timeout)
        self.deadline = self._clock.now() + self.timeout

    def expired(self):
        return self._clock.now() >= self.deadline

    def remaining(self):
        return max(0.0, self.deadline - self._clock.now())
