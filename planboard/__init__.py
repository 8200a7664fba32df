"""
planboard - live order updates for the production planning board.
"""

from .config import Settings
from .events import ChangeEvent, EventKind, MalformedEventError
from .notifier import ChangeNotifier
from .polling import PollingFallbackEngine, PollState
from .reconciliation import ReconciliationStore
from .suppression import SuppressionFilter
from .throttle import ThrottleGate
from .transport import ChannelHub, ConnectionState, SSETransport, TransportError

__version__ = "0.1.0"

__all__ = [
    "ChangeEvent", "ChangeNotifier", "ChannelHub", "ConnectionState", "EventKind",
    "MalformedEventError", "PollState", "PollingFallbackEngine", "ReconciliationStore",
    "SSETransport", "Settings", "SuppressionFilter", "ThrottleGate", "TransportError",
]
