"""Wiring of the upload-lifecycle services."""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from reelvault.common.constants import DELETE_QUEUE_NAME
from reelvault.server.objectstore.interface import ObjectStore
from reelvault.server.quota.dedup import DedupIndex
from reelvault.server.quota.ledger import QuotaLedger
from reelvault.server.quota.records import VideoRecordStore
from reelvault.server.services.queue import TaskQueue
from reelvault.server.services.state import StateManager
from reelvault.server.upload.manager import UploadManager
from reelvault.server.workers.deletion import DeletionService, DeletionWorker
from reelvault.server.workers.reconciler import OrphanReconciler

if TYPE_CHECKING:
    from reelvault.server.config import ServerSettings


@dataclass
class Services:
    """Every long-lived service, sharing one state manager and object store."""

    settings: "ServerSettings"
    state: StateManager
    store: ObjectStore
    queue: TaskQueue
    ledger: QuotaLedger
    dedup: DedupIndex
    records: VideoRecordStore
    uploads: UploadManager
    deletions: DeletionService
    deletion_worker: DeletionWorker
    reconciler: OrphanReconciler


def build_services(settings: "ServerSettings", state: StateManager, store: ObjectStore) -> Services:
    queue = TaskQueue(
        state,
        DELETE_QUEUE_NAME,
        visibility_timeout=settings.queue_visibility_timeout,
        max_receives=settings.queue_max_receives,
    )
    ledger = QuotaLedger(state, settings)
    dedup = DedupIndex(state)
    records = VideoRecordStore(state)
    return Services(
        settings=settings,
        state=state,
        store=store,
        queue=queue,
        ledger=ledger,
        dedup=dedup,
        records=records,
        uploads=UploadManager(state, store, ledger, dedup, records, settings),
        deletions=DeletionService(records, queue),
        deletion_worker=DeletionWorker(state, queue, store, records, dedup, ledger),
        reconciler=OrphanReconciler(store, ledger, records, queue, settings),
    )
