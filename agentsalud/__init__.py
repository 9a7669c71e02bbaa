"""AgentSalud multi-tenant appointment scheduling API."""

__version__ = "0.1.0"
