"""
chatbridge — relay between a Minecraft-style game server and chat platforms.

The game connects to the relay gateway over WebSocket; platform adapters
(Telegram, console) deliver game chat to bridged channels and feed channel
messages back into the game.
"""

__version__ = "0.1.0"
