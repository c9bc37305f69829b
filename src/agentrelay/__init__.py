"""agentrelay — chat messages in, supervised coding-agent runs out."""

__version__ = "0.1.0"
