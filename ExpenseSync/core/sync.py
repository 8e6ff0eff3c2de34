"""Sync orchestration between the local store and the remote store.

:class:`SyncAPI` runs one sync cycle (push, then pull) and exposes the sync state the UI
shows: whether a cycle is running, when the last successful sync happened and how many
changes are waiting. :class:`SyncScheduler` repeats the cycle on a timer while a user is
signed in.

The checkpoint (``last_sync_at``) only moves forward, and only after a cycle in which both
the push and the pull succeeded.
"""
import logging
import threading
from typing import Any, Optional, Set

from PySide6 import QtCore

from . import database as db_module
from . import queue as queue_module
from . import service
from .pull import advance_checkpoint, pull_changes
from .push import push_changes
from .schema import Operation, SYNC_FIELDS, SyncResult, SyncState, now_str
from ..settings import lib
from ..status import status

DEFAULT_INTERVAL_SECONDS: int = 30

IN_PROGRESS_MESSAGE = 'Sync already in progress'


class SyncAPI(QtCore.QObject):
    """Runs sync cycles and reports the sync state.

    Args:
        database: The local store. Defaults to the shared store.
        queue: The sync queue. Defaults to the shared queue.
        remote: The remote client. Defaults to :func:`service.get_service`.

    Signals:
        syncStarted (): Emitted when a cycle starts.
        syncFinished (object): Emitted with the :class:`SyncResult` of a cycle.
        stateChanged (object): Emitted with a fresh :class:`SyncState`.
    """
    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(object)
    stateChanged = QtCore.Signal(object)

    def __init__(
            self,
            database: Optional['db_module.DatabaseAPI'] = None,
            queue: Optional['queue_module.SyncQueue'] = None,
            remote: Any = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)
        self._database = database
        self._queue = queue
        self._remote = remote

        self._lock = threading.Lock()
        self._active: Set[str] = set()
        self._last_error: Optional[str] = None

        # Bumped by clear_sync_state; a cycle started before the bump must not commit
        self._generation = 0
        self._checkpoint_lock = threading.Lock()

        self.scheduler = SyncScheduler(self, parent=self)
        self._connect_signals()

    def _connect_signals(self) -> None:
        from ..ui.actions import signals

        self.queue.queueChanged.connect(self._on_queue_changed)
        self.queue.queueChanged.connect(signals.queueChanged)
        signals.authStateChanged.connect(self._on_auth_state_changed)
        signals.syncRequested.connect(self.scheduler.trigger)

        self.syncStarted.connect(signals.syncStarted)
        self.syncFinished.connect(signals.syncFinished)
        self.stateChanged.connect(signals.syncStateChanged)

    def _disconnect_signals(self) -> None:
        from ..ui.actions import signals

        for signal, slot in (
                (self.queue.queueChanged, self._on_queue_changed),
                (self.queue.queueChanged, signals.queueChanged),
                (signals.authStateChanged, self._on_auth_state_changed),
                (signals.syncRequested, self.scheduler.trigger),
        ):
            try:
                signal.disconnect(slot)
            except (RuntimeError, TypeError):
                logging.debug(f'{slot} was not connected')

    @property
    def database(self) -> 'db_module.DatabaseAPI':
        return self._database if self._database is not None else db_module.get_database()

    @property
    def queue(self) -> 'queue_module.SyncQueue':
        return self._queue if self._queue is not None else queue_module.get_queue()

    @property
    def remote(self) -> Any:
        return self._remote if self._remote is not None else service.get_service()

    @property
    def is_syncing(self) -> bool:
        with self._lock:
            return bool(self._active)

    def state(self) -> SyncState:
        """Return a snapshot of the current sync state."""
        return SyncState(
            is_syncing=self.is_syncing,
            last_sync_at=self.get_last_sync_time(),
            pending_count=self.get_queue_count(),
            error=self._last_error,
        )

    def _emit_state(self) -> None:
        self.stateChanged.emit(self.state())

    @QtCore.Slot(int)
    def _on_queue_changed(self, count: int) -> None:
        self._emit_state()

    @QtCore.Slot(str)
    def _on_auth_state_changed(self, user_id: str) -> None:
        if user_id:
            self.login(user_id)
        else:
            self.logout()

    def sync(self, user_id: str) -> SyncResult:
        """Push queued changes, then pull remote changes.

        The pull runs even if the push failed. Only one cycle runs per user at a time;
        a call made while a cycle is running returns immediately with ``skipped`` set.
        This method does not raise.

        Returns:
            SyncResult: ``success`` is True only if both phases succeeded.
        """
        with self._lock:
            if user_id in self._active:
                logging.debug(f'Sync for {user_id} refused, a cycle is running')
                return SyncResult(success=False, skipped=True, errors=[IN_PROGRESS_MESSAGE])
            self._active.add(user_id)

        self.syncStarted.emit()
        self._emit_state()
        try:
            result = self._sync(user_id)
        except Exception as ex:
            logging.exception(f'Sync failed for {user_id}')
            result = SyncResult(success=False, errors=[f'Sync failed: {ex}'])
        finally:
            with self._lock:
                self._active.discard(user_id)

        self._last_error = '; '.join(result.errors) if result.errors else None
        self.syncFinished.emit(result)
        self._emit_state()
        return result

    def _sync(self, user_id: str) -> SyncResult:
        db = self.database
        q = self.queue
        remote = self.remote

        logging.info(f'Sync started for {user_id}')
        generation = self._generation
        result = SyncResult()

        push_result = push_changes(user_id, database=db, queue=q, remote=remote)
        result.pushed = push_result.pushed
        result.failed = push_result.failed
        if not push_result.success:
            result.success = False
            result.errors.extend(push_result.errors)

        pull_started_at = now_str()
        pull_result = pull_changes(user_id, database=db, remote=remote, commit_checkpoint=False)
        result.pulled = pull_result.pulled
        if not pull_result.success:
            result.success = False
            result.errors.extend(pull_result.errors)

        if result.success:
            with self._checkpoint_lock:
                if generation == self._generation:
                    advance_checkpoint(db, user_id, pull_started_at)
                else:
                    logging.info(f'Sync state was cleared during the cycle, checkpoint for {user_id} not stored')

        logging.info(
            f'Sync finished for {user_id}: success={result.success}, pushed={result.pushed}, '
            f'failed={result.failed}, errors={len(result.errors)}'
        )
        return result

    def initialize_sync(self, user_id: str) -> SyncResult:
        """Link the local data to ``user_id`` and run the first sync.

        Every local-only expense and custom category is marked pending and queued for
        creation on the remote store.
        """
        db = self.database
        q = self.queue

        with self._checkpoint_lock:
            meta = db.get_sync_meta()
            if meta is not None and meta.user_id != user_id:
                # Another account's checkpoint would hide older rows of this one
                db.set_sync_meta(last_sync_at=None, user_id=user_id)
            else:
                db.set_sync_meta(user_id=user_id)

        marked = db.mark_all_local_entities_pending()
        for table, entity_id in marked:
            record = db.get(table, entity_id)
            if record is not None:
                payload = {k: v for k, v in record.items() if k not in SYNC_FIELDS}
                q.enqueue(table, Operation.Create, entity_id, payload)
        logging.info(f'Initialized sync for {user_id}, {len(marked)} local record(s) queued')

        return self.sync(user_id)

    def clear_sync_state(self) -> None:
        """Empty the queue and reset the checkpoint. Entity data is kept.

        A cycle still running when this is called does not store its checkpoint.
        """
        with self._checkpoint_lock:
            self._generation += 1
            self.database.set_sync_meta(last_sync_at=None, user_id=None)
        self.queue.clear()
        self._last_error = None
        logging.info('Cleared sync state')
        self._emit_state()

    def has_pending_changes(self) -> bool:
        return self.queue.count() > 0

    def get_last_sync_time(self) -> Optional[str]:
        meta = self.database.get_sync_meta()
        return meta.last_sync_at if meta else None

    def get_queue_count(self) -> int:
        return self.queue.count()

    def login(self, user_id: str) -> None:
        """Start syncing for a signed-in user. The first cycle links the local data."""
        logging.debug(f'Starting sync for {user_id}')
        self.scheduler.start(user_id, initialize=True)

    def resume_session(self, manager: Any = None) -> Optional[str]:
        """Start syncing for the stored session, if there is one.

        An expired session that cannot be refreshed because the remote is unreachable is
        still resumed: every cycle asks for a fresh access token, so the refresh happens
        once the remote is back.

        Args:
            manager: The session manager. Defaults to :data:`auth.auth_manager`.

        Returns:
            The resumed user id, or None when an interactive sign-in is required.
        """
        from . import auth
        manager = manager or auth.auth_manager

        try:
            user_id = manager.get_valid_session()['user_id']
        except status.RemoteUnavailableException as ex:
            user_id = manager.user_id
            logging.info(f'Remote unreachable, resuming the stored session offline: {ex}')
        except (auth.AuthExpiredError, status.BaseStatusException) as ex:
            logging.info(f'No usable session, running offline: {ex}')
            return None

        if not user_id:
            return None
        self.login(user_id)
        return user_id

    def logout(self) -> None:
        """Stop syncing and clear the sync state."""
        self.scheduler.stop()
        self.scheduler.wait()
        self.clear_sync_state()

    def shutdown(self) -> None:
        """Stop the scheduler, wait for a running cycle to finish and detach from the signal hub."""
        self.scheduler.stop()
        self.scheduler.wait()
        self._disconnect_signals()


class SyncScheduler(QtCore.QObject):
    """Runs sync cycles on a timer, one at a time, in a background thread.

    Signals:
        cycleFinished (object): Emitted with the :class:`SyncResult`, or the exception
            when a cycle could not run.
    """
    cycleFinished = QtCore.Signal(object)

    def __init__(
            self,
            sync_api: SyncAPI,
            interval_seconds: Optional[int] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)
        self.sync_api = sync_api
        self._interval_seconds = interval_seconds
        self._user_id: Optional[str] = None
        self._initialize = False
        self._worker: Optional[service.AsyncWorker] = None

        self._timer = QtCore.QTimer(self)
        self._timer.setSingleShot(False)
        self._timer.timeout.connect(self.trigger)

    @property
    def interval_seconds(self) -> int:
        if self._interval_seconds is not None:
            return self._interval_seconds
        return int(lib.settings.get_section('sync').get('interval_seconds', DEFAULT_INTERVAL_SECONDS))

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def is_active(self) -> bool:
        return self._timer.isActive()

    def is_running(self) -> bool:
        return self._worker is not None

    def start(self, user_id: str, initialize: bool = False) -> None:
        """Run a cycle now and then every :attr:`interval_seconds` for ``user_id``.

        Args:
            user_id: The signed-in user.
            initialize: Run :meth:`SyncAPI.initialize_sync` as the first cycle.
        """
        self._user_id = user_id
        self._initialize = initialize

        if lib.settings.get_section('sync').get('auto_sync', True):
            self._timer.start(self.interval_seconds * 1000)
        else:
            logging.debug('Automatic sync is disabled, running one cycle only')
        self.trigger()

    def stop(self) -> None:
        """Stop the timer. A running cycle is allowed to finish."""
        self._timer.stop()
        self._user_id = None
        self._initialize = False

    def wait(self, timeout_ms: int = 30000) -> bool:
        """Block until the running cycle finishes.

        Returns:
            True if no cycle is running anymore.
        """
        worker = self._worker
        if worker is None:
            return True
        return worker.wait(timeout_ms)

    @QtCore.Slot()
    def trigger(self) -> bool:
        """Start a cycle unless one is already running.

        Returns:
            True if a cycle was started.
        """
        if not self._user_id:
            logging.debug('Sync trigger ignored, no user signed in')
            return False
        if self._worker is not None:
            logging.debug('Sync trigger ignored, a cycle is running')
            return False

        func = self.sync_api.initialize_sync if self._initialize else self.sync_api.sync
        self._initialize = False

        worker = service.AsyncWorker(func, self._user_id, max_attempts=1)
        worker.resultReady.connect(self.cycleFinished)
        worker.errorOccurred.connect(self._on_error)
        worker.finished.connect(self._on_worker_finished)
        self._worker = worker
        worker.start()
        return True

    @QtCore.Slot(object)
    def _on_error(self, ex: Any) -> None:
        logging.error(f'Sync cycle failed: {ex}')
        self.cycleFinished.emit(ex)

    @QtCore.Slot()
    def _on_worker_finished(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.deleteLater()


sync_api: Optional[SyncAPI] = None


def get_sync_api() -> SyncAPI:
    """Return the shared sync API, creating it on first use."""
    global sync_api
    if sync_api is None:
        sync_api = SyncAPI()
    return sync_api
