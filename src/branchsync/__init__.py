"""branchsync: reconcile assistant session branches into a target branch."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("branchsync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .lock import SyncLock  # noqa: F401
from .orchestrator import BulkSyncOrchestrator  # noqa: F401
from .vcs import GitClient  # noqa: F401

__all__ = [
    "BulkSyncOrchestrator",
    "GitClient",
    "SyncLock",
    "__version__",
]
