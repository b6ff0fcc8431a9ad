NOTIFICATION_DEFAULTS = {
    "enablePppoe": True,
    "enableDhcpPortal": True,
    "enableNetwork": True,
    "enableBilled": False,
    # Same event is not re-alerted within this window, read or not.
    "debounceMinutes": 15,
    # DHCP portal clients whose authorization runs out within this many hours get an "expires soon" alert.
    "dhcpNearExpiryHours": 24,
    "generatorIntervalSeconds": 30,
}

TELEGRAM_DEFAULTS = {
    "enabled": False,
    "botToken": "",
    "chatId": "",
    "enableClientDueDate": False,
    "enableClientDisconnected": False,
    "enableInterfaceDisconnected": False,
    "enableUserPaid": False,
}

PANEL_DEFAULTS = {
    "language": "en",
    "currency": "PHP",
    "notificationSettings": NOTIFICATION_DEFAULTS,
    "telegramSettings": TELEGRAM_DEFAULTS,
}

# Which Telegram flag gates the relay for each generator.
TELEGRAM_FLAGS = {
    "pppoe": "enableClientDisconnected",
    "dhcp_portal": "enableClientDueDate",
    "network": "enableInterfaceDisconnected",
    "billing": "enableUserPaid",
}

MIN_GENERATOR_INTERVAL_SECONDS = 5
NOTIFICATION_POLL_SECONDS = 15
