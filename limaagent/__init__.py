"""Guest and host agent components: port discovery, event APIs, forwarding rules and DNS."""

__version__ = "0.1.0"