__version__ = "0.1.0"

from link_sentinel_core.bulk import BulkResolveOrchestrator, BulkResolveSession, BulkStepRequest, BulkStepResult  # noqa: E402
from link_sentinel_core.config import Settings, load_settings  # noqa: E402
from link_sentinel_core.errors import LinkSentinelError  # noqa: E402
from link_sentinel_core.resolver import DestinationResolver  # noqa: E402
from link_sentinel_core.scan import ScanOrchestrator  # noqa: E402
from link_sentinel_core.service import Envelope, LinkSentinelService, build_postgres_service  # noqa: E402

__all__ = [
    "__version__",
    "BulkResolveOrchestrator",
    "BulkResolveSession",
    "BulkStepRequest",
    "BulkStepResult",
    "DestinationResolver",
    "Envelope",
    "LinkSentinelError",
    "LinkSentinelService",
    "ScanOrchestrator",
    "Settings",
    "build_postgres_service",
    "load_settings",
]
