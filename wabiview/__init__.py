"""WabiView - WabiSabi coordinator and coinjoin monitor."""

__version__ = "1.0.0"

from .coinjoin_service import CoinjoinService
from .heuristics import looks_like_coinjoin
from .poller import CoordinatorPoller
from .scanner import CoinjoinScanner

__all__ = ["CoinjoinService", "CoordinatorPoller", "CoinjoinScanner", "looks_like_coinjoin"]
