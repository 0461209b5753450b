"""Database models for fitlog."""
from fitlog.models.user import User
from fitlog.models.activity import Activity, ActivityType
from fitlog.models.import_run import ImportRun, ImportPageLog
from fitlog.models.sync_state import SyncState

__all__ = ["User", "Activity", "ActivityType", "ImportRun", "ImportPageLog", "SyncState"]
