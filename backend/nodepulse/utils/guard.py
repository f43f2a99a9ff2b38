"""Non-reentrant guard for periodic jobs."""
import logging

logger = logging.getLogger(__name__)


class NonReentrantGuard:
    """Single-permit flag rejecting a run while the previous one is in flight.
    
    Acquire before the run starts and release in a ``finally`` block. A
    rejected acquisition is counted so status endpoints can show how often
    cycles were skipped.
    
    Usage:
        if not guard.try_acquire():
            return
        try:
            await do_work()
        finally:
            guard.release()
    """
    
    def __init__(self, name: str):
        self.name = name
        self._busy = False
        self.skipped = 0
    
    @property
    def busy(self) -> bool:
        return self._busy
    
    def try_acquire(self) -> bool:
        """Take the permit, or return False if it is already held."""
        if self._busy:
            self.skipped += 1
            logger.warning(f"{self.name}: previous run still in progress, skipping")
            return False
        self._busy = True
        return True
    
    def release(self):
        self._busy = False
