"""Goal-to-agent orchestrator: analyze goals, run CLI workers, retry adaptively."""

__version__ = "0.1.0"
