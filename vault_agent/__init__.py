"""Question answering over a personal notes vault with an agentic search loop."""

__version__ = "0.1.0"
