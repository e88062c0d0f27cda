"""Background checks for freshly registered prefixes."""
import atexit
import functools
import logging
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)


class CheckQueue:
    """
    Runs single-prefix reconciliations off the request thread. Submitting
    returns immediately; the result is only logged.
    """

    def __init__(self, reconciler_factory, max_workers=1):
        self._reconciler_factory = reconciler_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='prefix-check')
        atexit.register(self.shutdown)

    def _check(self, prefix, description):
        reconciler = self._reconciler_factory()
        return reconciler.check_prefix(prefix, description)

    @staticmethod
    def _log_result(prefix, future):
        if future.cancelled():
            logger.info(f"Background check of {prefix} cancelled")
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background check of {prefix} failed: {error}")
        else:
            logger.info(f"Background check of {prefix} finished: {future.result().value}")

    def submit(self, prefix, description=''):
        """Schedules a check of prefix and returns its Future."""
        future = self._executor.submit(self._check, prefix, description)
        future.add_done_callback(functools.partial(self._log_result, prefix))
        return future

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)
