"""taskcrew: multi-agent task planning and execution."""

__version__ = "0.1.0"
