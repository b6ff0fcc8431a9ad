import json
import urllib.error
import urllib.parse
import urllib.request

API_URL = "https://api.telegram.org/bot{token}/sendMessage"

TEST_MESSAGE = (
    "🧪 <b>Test Message</b>\n\n"
    "This is a test message from your MikroTik Billing Manager panel.\n\n"
    "If you received this message, your Telegram integration is working correctly!"
)

# Bot API descriptions mapped to what the panel shows. First match wins.
ERROR_HINTS = (
    (("chat not found", "chat_id", "chat id"), "Telegram ChatID error, Please check your ChatID."),
    (("unauthorized", "not found", "token"), "Telegram Bot Token error, Please check your bot token."),
    (("bot was blocked", "kicked"), "Telegram bot was removed from the chat, Please add it again."),
)


class TelegramError(RuntimeError):
    pass


def describe_error(description):
    text = (description or "").strip()
    lowered = text.lower()
    for needles, hint in ERROR_HINTS:
        if any(needle in lowered for needle in needles):
            return hint
    return f"Telegram error: {text}" if text else "Telegram error: Unknown response from Telegram."


def _http_error_description(exc):
    try:
        raw = exc.read().decode("utf-8", errors="replace")
    except (OSError, AttributeError):
        return ""
    try:
        return json.loads(raw).get("description", "")
    except (ValueError, AttributeError):
        return raw


def send_telegram(token, chat_id, text, parse_mode=None, timeout=20):
    if not token or not chat_id:
        raise TelegramError("Telegram settings missing: bot token or chat ID.")
    fields = {"chat_id": chat_id, "text": text}
    if parse_mode:
        fields["parse_mode"] = parse_mode
    req = urllib.request.Request(API_URL.format(token=token), data=urllib.parse.urlencode(fields).encode("utf-8"))
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        raise TelegramError(describe_error(_http_error_description(exc))) from exc
    except urllib.error.URLError as exc:
        raise TelegramError("Telegram network error, please check connectivity.") from exc
    try:
        reply = json.loads(body)
    except ValueError:
        return {}
    if isinstance(reply, dict) and reply.get("ok") is False:
        raise TelegramError(describe_error(reply.get("description")))
    return reply


def send_test_message(telegram_settings):
    """Send the fixed test message with the saved bot token and chat id."""
    if not telegram_settings.get("enabled"):
        raise TelegramError("Telegram notifications are disabled.")
    return send_telegram(
        telegram_settings.get("botToken"),
        telegram_settings.get("chatId"),
        TEST_MESSAGE,
        parse_mode="HTML",
    )
