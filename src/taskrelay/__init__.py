"""Durable task dependency/state engine for agent-dispatched work."""

__version__ = "0.1.0"
