"""Deferred cleanup actions that survive early returns and termination signals.

A ``DeferredCleanup`` collects callables while a guarded block runs and
executes each of them exactly once: when the block exits (normally or via an
exception), at interpreter exit, or when SIGTERM/SIGHUP arrives. Signals are
turned into ``SystemExit`` so that enclosing ``finally`` blocks still run.
"""

from __future__ import annotations

import atexit
import signal
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .observability import log_debug, log_warning


def _handled_signals() -> List[signal.Signals]:
    sigs = [signal.SIGTERM]
    if hasattr(signal, "SIGHUP"):
        sigs.append(signal.SIGHUP)
    return sigs


class DeferredCleanup:
    """Run registered cleanup callables exactly once, last-in first-out.

    Example:
        with DeferredCleanup("sync-lock") as cleanup:
            lock.acquire()
            cleanup.defer(lock.release)
            do_work()
    """

    def __init__(self, name: str = "cleanup") -> None:
        self.name = name
        self._actions: List[Tuple[str, Callable[[], Any]]] = []
        self._original_handlers: Dict[int, Any] = {}
        self._installed = False
        self._ran = False
        self._mutex = threading.RLock()

    def defer(self, action: Callable[[], Any], label: Optional[str] = None) -> None:
        """Register ``action`` to run when the guard is released. Ignored once cleanup has run."""
        if self._ran:
            log_warning(f"[CLEANUP] {self.name}: ignoring {label or action!r} registered after cleanup ran")
            return
        self._actions.append((label or getattr(action, "__name__", "action"), action))

    def install(self) -> "DeferredCleanup":
        if self._installed:
            return self
        atexit.register(self.run)
        if threading.current_thread() is threading.main_thread():
            for sig in _handled_signals():
                try:
                    self._original_handlers[sig] = signal.signal(sig, self._handle_signal)
                except (ValueError, OSError):
                    # Not permitted here; atexit still covers interpreter exit
                    pass
        self._installed = True
        return self

    def _handle_signal(self, signum: int, frame: Any) -> None:
        log_warning(f"[CLEANUP] {self.name}: received signal {signum}, running deferred cleanup")
        self.run()
        raise SystemExit(128 + signum)

    def _restore_handlers(self) -> None:
        for sig, handler in self._original_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError, TypeError):
                pass
        self._original_handlers.clear()

    def run(self) -> None:
        """Execute pending actions once, last-in first-out.

        Every action is attempted even if an earlier one fails; the first
        failure is re-raised after the rest have run. Actions are taken off the
        list one at a time under a re-entrant lock, so a signal handler that
        interrupts a run on the same thread finishes the remaining actions
        instead of blocking.
        """
        with self._mutex:
            self._ran = True

        first_error: Optional[BaseException] = None
        while True:
            with self._mutex:
                if not self._actions:
                    break
                label, action = self._actions.pop()
            log_debug(f"[CLEANUP] {self.name}: running {label}")
            try:
                action()
            except Exception as exc:
                log_warning(f"[CLEANUP] {self.name}: {label} failed: {exc}")
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    @property
    def done(self) -> bool:
        return self._ran

    def release(self) -> None:
        """Run pending actions and uninstall the exit hooks."""
        try:
            self.run()
        finally:
            if self._installed:
                self._restore_handlers()
                atexit.unregister(self.run)
                self._installed = False

    def __enter__(self) -> "DeferredCleanup":
        return self.install()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False
