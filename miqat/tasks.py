"""Run blocking work off the owning loop and hand results back to it."""

import logging
import threading

logger = logging.getLogger(__name__)


def _call_now(fn) -> None:
    fn()


class TaskRunner:
    """
    Runs a blocking callable and delivers its outcome through ``dispatch``.

    ``dispatch`` marshals a zero-argument callable onto the thread that owns
    the engine state (for a Tk front end that is ``lambda fn: root.after(0, fn)``,
    for the terminal app it is ``queue.put``). A threaded runner needs one,
    otherwise results would land on worker threads. With ``threaded=False``
    the work runs inline on the caller's thread.
    """

    def __init__(self, dispatch=None, threaded: bool = True):
        if threaded and dispatch is None:
            raise ValueError("a threaded TaskRunner needs a dispatch onto the owning loop")
        self.marshals = dispatch is not None
        self.dispatch = dispatch or _call_now
        self.threaded = threaded

    def submit(self, work, on_done) -> None:
        """Run ``work()``; then dispatch ``on_done(result, error)``."""
        if not self.threaded:
            self._run(work, on_done)
            return
        t = threading.Thread(target=self._run, args=(work, on_done), daemon=True)
        t.start()

    def _run(self, work, on_done) -> None:
        try:
            result = work()
        except Exception as exc:
            logger.debug("Background task failed: %s", exc)
            self.dispatch(lambda: on_done(None, exc))
            return
        self.dispatch(lambda: on_done(result, None))
