"""chatdesk: conversation routing and realtime sync engine for chat CRM screens."""

__version__ = "0.1.0"
