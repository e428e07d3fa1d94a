"""agentcanvas: session lifecycle, recovery and search for canvas-hosted coding agents."""

__version__ = "0.1.0"
