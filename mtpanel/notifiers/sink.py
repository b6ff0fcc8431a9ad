import html
import logging

from .telegram import TelegramError, send_telegram

logger = logging.getLogger(__name__)


class DeliverySink:
    """Persists admitted notifications and relays them to Telegram.

    Delivery is at-most-once: a failed write is logged and dropped. The
    Telegram relay only follows a successful write and never undoes it.
    """

    def __init__(self, store, telegram_settings=None, send=send_telegram):
        self.store = store
        self.telegram = telegram_settings or {}
        self.send = send

    def relay_enabled(self, flag):
        cfg = self.telegram
        if not flag or not cfg.get("enabled"):
            return False
        if not cfg.get("botToken") or not cfg.get("chatId"):
            return False
        return bool(cfg.get(flag))

    def deliver(self, notification, telegram_flag=None):
        try:
            self.store.create_notification(notification)
        except Exception:
            logger.exception("Failed to persist notification %s", notification.get("id"))
            return False
        if self.relay_enabled(telegram_flag):
            try:
                self.send(
                    self.telegram["botToken"],
                    self.telegram["chatId"],
                    html.escape(notification["message"], quote=False),
                    parse_mode="HTML",
                )
            except TelegramError as exc:
                logger.warning("Telegram relay failed for %s: %s", notification.get("id"), exc)
            except Exception:
                logger.exception("Telegram relay failed for %s", notification.get("id"))
        return True
