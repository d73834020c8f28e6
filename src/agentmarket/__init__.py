"""agentmarket — pay-per-call service marketplace runtime for autonomous agents."""

__version__ = "0.1.0"
