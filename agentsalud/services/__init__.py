"""Domain services for the AgentSalud API."""
