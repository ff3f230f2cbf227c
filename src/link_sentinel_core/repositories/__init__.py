from link_sentinel_core.repositories.documents import DocumentRepository
from link_sentinel_core.repositories.issues import LinkIssueRepository
from link_sentinel_core.repositories.resolve_cache import ResolveCacheRepository
from link_sentinel_core.repositories.state import ScanStateRepository

__all__ = [
    "DocumentRepository",
    "LinkIssueRepository",
    "ResolveCacheRepository",
    "ScanStateRepository",
]
