"""Building blocks for Model Context Protocol servers: sessions, a registry and transports."""

__version__ = "0.1.0"