from __future__ import annotations

import time
from typing import Callable, List

from .models import PushErrorKind, PushOutcome
from .observability import log_debug, log_warning
from .vcs import GitClient, PushError


def backoff_schedule(max_retries: int, initial_delay: float) -> List[float]:
    """Delays slept between attempts: ``[d0, 2*d0, 4*d0, ...]``, one fewer than attempts."""
    return [initial_delay * (2 ** i) for i in range(max(0, max_retries - 1))]


def manual_push_commands(remote: str, branch: str) -> tuple:
    return (
        f"git checkout {branch}",
        f"git pull {remote} {branch}",
        f"git push {remote} {branch}",
    )


class PushRetrier:
    """Push with bounded exponential backoff.

    Permission errors fail immediately; anything else is retried until
    ``max_retries`` attempts have been made.
    """

    def __init__(
        self,
        vcs: GitClient,
        *,
        max_retries: int = 3,
        initial_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.vcs = vcs
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self._sleep = sleep

    def push(self, branch: str, *, dry_run: bool = False) -> PushOutcome:
        remote = self.vcs.remote
        if dry_run:
            return PushOutcome(
                success=True,
                branch=branch,
                message="dry run",
                planned_commands=(f"git push {remote} {branch}",),
            )

        delay = self.initial_delay
        delays: List[float] = []
        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                self.vcs.push(branch)
            except PushError as exc:
                last_error = exc.stderr or str(exc)
                if exc.kind == PushErrorKind.PERMISSION_DENIED:
                    log_warning(f"[PUSH] {branch} rejected by remote policy; not retrying", stderr=last_error)
                    return PushOutcome(
                        success=False,
                        branch=branch,
                        attempts=attempt,
                        delays=tuple(delays),
                        error_kind=PushErrorKind.PERMISSION_DENIED,
                        message=f"Permission denied pushing {branch}: {last_error}",
                        manual_commands=manual_push_commands(remote, branch),
                    )
                if attempt < self.max_retries:
                    log_warning(
                        f"[PUSH] attempt {attempt}/{self.max_retries} for {branch} failed; retrying in {delay}s",
                        stderr=last_error,
                    )
                    delays.append(delay)
                    self._sleep(delay)
                    delay *= 2
                continue
            log_debug(f"[PUSH] {branch} pushed to {remote}", attempts=attempt)
            return PushOutcome(success=True, branch=branch, attempts=attempt, delays=tuple(delays))

        return PushOutcome(
            success=False,
            branch=branch,
            attempts=self.max_retries,
            delays=tuple(delays),
            error_kind=PushErrorKind.TRANSIENT,
            message=f"Push of {branch} failed after {self.max_retries} attempts: {last_error}",
            manual_commands=manual_push_commands(remote, branch),
        )
