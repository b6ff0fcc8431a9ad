import logging
import threading

from .db import update_job_status, utc_now_iso
from .notifications import PanelStore
from .notifiers import billing as billing_notifier
from .notifiers import dhcp_portal as dhcp_portal_notifier
from .notifiers import network as network_notifier
from .notifiers import pppoe as pppoe_notifier
from .notifiers.common import utc_now
from .notifiers.sink import DeliverySink
from .parsers import parse_bool, parse_int
from .settings_defaults import MIN_GENERATOR_INTERVAL_SECONDS, NOTIFICATION_DEFAULTS
from .settings_store import get_panel_settings

logger = logging.getLogger(__name__)

JOB_NAME = "notifications"

# (settings flag, generator module) in run order.
GENERATORS = (
    ("enablePppoe", pppoe_notifier),
    ("enableDhcpPortal", dhcp_portal_notifier),
    ("enableNetwork", network_notifier),
    ("enableBilled", billing_notifier),
)


class PeriodicTask:
    """Runs `target` now and then every `interval()` seconds until stopped."""

    def __init__(self, name, target, interval):
        self.name = name
        self.target = target
        self.interval = interval
        self.stop_event = None
        self.thread = None

    @property
    def running(self):
        return self.thread is not None and self.thread.is_alive()

    def start(self):
        if self.running:
            return
        # A thread only watches the event it was started with.
        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=self._loop, args=(self.stop_event,), name=self.name, daemon=True)
        self.thread.start()

    def stop(self, timeout=2):
        if self.stop_event is not None:
            self.stop_event.set()
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
        self.thread = None

    def _loop(self, stop_event):
        while not stop_event.is_set():
            try:
                self.target()
            except Exception:
                logger.exception("%s run failed", self.name)
            if stop_event.wait(self.interval()):
                break


def enabled_generators(notification_settings):
    out = []
    for flag, module in GENERATORS:
        if parse_bool(notification_settings.get(flag), NOTIFICATION_DEFAULTS[flag]):
            out.append(module)
    return out


class JobsManager:
    def __init__(self, store=None, settings_loader=get_panel_settings):
        self.store = store or PanelStore()
        self.settings_loader = settings_loader
        self._cycle_lock = threading.Lock()
        self.task = PeriodicTask("notification-generators", self.run_cycle, self.interval_seconds)

    def interval_seconds(self):
        try:
            settings = self.settings_loader().get("notificationSettings", {}) or {}
        except Exception:
            logger.exception("Failed to load notification settings, using default interval")
            settings = {}
        seconds = parse_int(settings.get("generatorIntervalSeconds"), NOTIFICATION_DEFAULTS["generatorIntervalSeconds"])
        return max(seconds, MIN_GENERATOR_INTERVAL_SECONDS)

    def start(self):
        self.task.start()

    def stop(self):
        self.task.stop()

    def run_cycle(self, now=None):
        """Run every enabled generator once. Returns False when a cycle is already in flight."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Notification cycle still running, skipping this tick")
            return False
        try:
            update_job_status(JOB_NAME, last_run_at=utc_now_iso())
            try:
                self._run_generators(now or utc_now())
            except Exception as exc:
                logger.exception("Notification cycle failed")
                update_job_status(JOB_NAME, last_error=str(exc), last_error_at=utc_now_iso())
            else:
                update_job_status(JOB_NAME, last_success_at=utc_now_iso(), last_error="", last_error_at="")
            return True
        finally:
            self._cycle_lock.release()

    def _run_generators(self, now):
        settings = self.settings_loader()
        notification_settings = settings.get("notificationSettings", {}) or {}
        generators = enabled_generators(notification_settings)
        if not generators:
            return
        routers = self.store.list_routers()
        if not routers:
            return
        existing = self.store.list_notifications()
        sink = DeliverySink(self.store, settings.get("telegramSettings", {}) or {})
        for module in generators:
            try:
                created = module.run(routers, existing, notification_settings, sink, now=now)
            except Exception:
                logger.exception("%s generator failed", module.__name__.rsplit(".", 1)[-1])
                continue
            if created:
                logger.info("%s generator created %d notification(s)", module.__name__.rsplit(".", 1)[-1], created)
