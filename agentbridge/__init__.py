"""agentbridge: supervised, correlated interaction with a local CLI agent."""

__version__ = "0.1.0"
