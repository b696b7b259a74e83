"""Core sync engine components for Report Sync."""

from report_sync.core.bootstrap import open_store
from report_sync.core.coordinator import SyncQueueState, SyncResult, SyncRunner
from report_sync.core.data_checker import CheckedColl, DataChecker
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.messages import ProcessMessage, ProcessMessageManager
from report_sync.core.public_colls_conf import PublicCollsConfAccessors
from report_sync.core.recalc import SubAccountLedgersBalancesRecalc
from report_sync.core.step_manager import StepManager
from report_sync.core.steps import LastSyncedInfo, SyncUserStep
from report_sync.core.users import SubUserAuth, UserAuth, normalize_user_data

__all__ = [
    "open_store",
    "SyncQueueState",
    "SyncResult",
    "SyncRunner",
    "CheckedColl",
    "DataChecker",
    "SyncInterrupter",
    "ProcessMessage",
    "ProcessMessageManager",
    "PublicCollsConfAccessors",
    "SubAccountLedgersBalancesRecalc",
    "StepManager",
    "LastSyncedInfo",
    "SyncUserStep",
    "SubUserAuth",
    "UserAuth",
    "normalize_user_data",
]
