import logging
import threading

from .client import SessionExpired
from .jobs import PeriodicTask
from .notifications import sort_newest_first
from .settings_defaults import NOTIFICATION_POLL_SECONDS

logger = logging.getLogger(__name__)


class NotificationCenter:
    """The signed-in user's view of notifications.

    Start it at login and stop it at logout; while running it refreshes the
    list every `poll_interval` seconds. Writes update the local list first
    and reconcile with the store when the write fails.

    Every stop() starts a new session generation. Results of store calls
    that began in an earlier generation are discarded, so nothing reaches
    the list after logout.
    """

    def __init__(self, store, poll_interval=NOTIFICATION_POLL_SECONDS):
        self.store = store
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._notifications = []
        self._generation = 0
        self._task = PeriodicTask("notification-refresh", self.refresh, lambda: self.poll_interval)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    @property
    def active(self):
        return self._task.running

    def start(self):
        self._task.start()

    def stop(self):
        with self._lock:
            self._generation += 1
            self._notifications = []
        self._task.stop()

    @property
    def notifications(self):
        with self._lock:
            return [dict(n) for n in self._notifications]

    @property
    def unread_count(self):
        with self._lock:
            return sum(1 for n in self._notifications if n.get("is_read") == 0)

    def _current_generation(self):
        with self._lock:
            return self._generation

    def _end_session(self, generation):
        if generation != self._current_generation():
            return
        logger.warning("Panel session expired, stopping notification updates")
        self.stop()

    def refresh(self):
        return self._refresh(self._current_generation())

    def _refresh(self, generation):
        try:
            data = self.store.list_notifications()
        except SessionExpired:
            self._end_session(generation)
            return False
        except Exception:
            logger.exception("Failed to fetch notifications")
            return False
        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping notifications fetched before logout")
                return False
            self._notifications = sort_newest_first(data)
        return True

    def mark_as_read(self, notification_id):
        with self._lock:
            generation = self._generation
            self._notifications = [
                {**n, "is_read": 1} if n.get("id") == notification_id else n for n in self._notifications
            ]
        try:
            self.store.mark_notification_read(notification_id)
        except SessionExpired:
            self._end_session(generation)
        except Exception:
            logger.exception("Failed to mark notification %s as read", notification_id)
            self._refresh(generation)

    def mark_all_as_read(self):
        with self._lock:
            generation = self._generation
            if not any(n.get("is_read") == 0 for n in self._notifications):
                return
            self._notifications = [{**n, "is_read": 1} for n in self._notifications]
        try:
            self.store.mark_all_notifications_read()
        except SessionExpired:
            self._end_session(generation)
        except Exception:
            logger.exception("Failed to mark all notifications as read")
            self._refresh(generation)

    def clear(self):
        with self._lock:
            generation = self._generation
            previous = self._notifications
            if not previous:
                return
            self._notifications = []
        try:
            self.store.clear_notifications()
        except SessionExpired:
            self._end_session(generation)
        except Exception:
            logger.exception("Failed to clear notifications")
            with self._lock:
                if generation == self._generation:
                    self._notifications = previous
