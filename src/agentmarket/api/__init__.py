"""HTTP API for the agentmarket runtime."""
