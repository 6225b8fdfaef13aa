"""Models package."""

from .user import User
from .edit_record import EditRecord
from .history_entry import HistoryEntry
from .subscription import Subscription
