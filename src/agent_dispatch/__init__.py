"""Readiness resolution and multi-provider invocation for autonomous coding agents."""

__version__ = "0.1.0"
