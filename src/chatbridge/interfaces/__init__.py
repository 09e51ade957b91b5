"""interfaces/ — chat platform adapters (Telegram, console)."""
