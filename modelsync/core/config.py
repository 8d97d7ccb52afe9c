import time
from typing import Callable


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class SyncConfig:
    """
    Global configuration for the sync core.

    Developers configure:
      - operation_ttl_ms: how long (in ms since the last status change) an
        operation stays relevant to rendering and survives a sync trim
      - clock: a callable returning the current time in epoch milliseconds

    Every store reads these at call time, so reconfiguring takes effect
    immediately.
    """

    DEFAULT_OPERATION_TTL_MS = 1000 * 60 * 2

    operation_ttl_ms: int = DEFAULT_OPERATION_TTL_MS
    clock: Callable[[], int] = staticmethod(_epoch_ms)

    def configure(self, **kwargs) -> None:
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise AttributeError(f"Invalid configuration key: {key}")

    def reset(self) -> None:
        """Restore defaults on this instance."""
        self.__dict__.pop("operation_ttl_ms", None)
        self.__dict__.pop("clock", None)

    def now(self) -> int:
        return int(self.clock())

    def staleness_cutoff(self) -> int:
        """Operations with a timestamp at or below this value are stale."""
        return self.now() - self.operation_ttl_ms


app_config = SyncConfig()
