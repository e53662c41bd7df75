"""Client side of the dashboard: durable storage, server transport and reconciliation."""
