from __future__ import annotations

from .confirm import ConfirmationProvider
from .models import ConflictReport, ConflictVerdict
from .observability import log_debug, log_warning
from .vcs import GitClient


UNRELATED_WARNING = "No merge base found; branches may be unrelated"


class ConflictDetector:
    """Predicts merge conflicts without touching the working tree or index."""

    def __init__(self, vcs: GitClient):
        self.vcs = vcs

    def check(self, target: str, candidate: str) -> ConflictReport:
        base = self.vcs.merge_base(target, candidate)
        if base is None:
            log_warning(f"[CONFLICT] {candidate} -> {target}: {UNRELATED_WARNING}")
            return ConflictReport(ConflictVerdict.INDETERMINATE, (), None, warning=UNRELATED_WARNING)
        report = self.vcs.simulate_merge(base, target, candidate)
        log_debug(
            f"[CONFLICT] {candidate} -> {target}: {report.verdict.value}",
            paths=list(report.paths),
            method=report.method,
        )
        return report

    def approve(self, report: ConflictReport, confirm: ConfirmationProvider, candidate: str) -> bool:
        """Ask before proceeding with a merge that is predicted to conflict or unknown."""
        if report.verdict == ConflictVerdict.CLEAN:
            return True
        if report.verdict == ConflictVerdict.CONFLICTING:
            files = ", ".join(report.paths) or "unknown files"
            return confirm.confirm(
                f"Merging {candidate} will conflict in: {files}. Continue anyway?",
                False,
            )
        return confirm.confirm(
            f"Could not predict conflicts for {candidate} ({report.warning}). Continue?",
            True,
        )
