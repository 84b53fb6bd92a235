"""FastAPI providers for the sync singletons (overridable in tests)."""
from ..services.conflict_detection import ConflictDetector, conflict_detector
from ..services.connectivity import ConnectivityMonitor, connectivity_monitor
from ..services.offline_queue import OfflineQueue, offline_queue
from ..services.sync_processor import SyncProcessor, sync_processor


def get_queue() -> OfflineQueue:
    return offline_queue


def get_processor() -> SyncProcessor:
    return sync_processor


def get_conflict_detector() -> ConflictDetector:
    return conflict_detector


def get_connectivity() -> ConnectivityMonitor:
    return connectivity_monitor
