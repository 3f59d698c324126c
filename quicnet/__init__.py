"""Server side of client/server multiplayer networking: channels, framing, certificates and an endpoint."""

__version__ = "0.17.0"

__all__ = [
    "errors",
    "protocol",
    "channels",
    "certificate",
    "tasks",
    "connection",
    "endpoint",
    "server",
]