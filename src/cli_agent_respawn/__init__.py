"""Idle detection and respawn control loop for terminal-attached coding agents."""

__version__ = "0.1.0"
