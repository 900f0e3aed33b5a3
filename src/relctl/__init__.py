"""relctl - release orchestration for slot-based and remote-machine web hosts."""

__version__ = "0.1.0"
