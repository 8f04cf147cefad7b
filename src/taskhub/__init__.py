"""TaskHub: multi-tenant task and team management with real-time notifications."""

__version__ = "1.0.0"
