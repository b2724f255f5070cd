"""
Engine configuration.

Kernels read their tuning knobs from an EngineConfig. Every kernel that has
knobs accepts an optional ``config`` argument; when it is omitted the
process-wide default from get_config() is used.
"""

from dataclasses import dataclass


@dataclass
class EngineConfig:
    """
    Tuning parameters for the tensor kernels.

    Attributes:
        num_threads: Worker threads used by matmul. 1 runs everything on the
            calling thread.
        block_rows: Edge length (output rows and columns) of one matmul tile
        attention_block_size: Key/value positions processed per step by the
            streaming attention kernel
    """

    num_threads: int = 1
    block_rows: int = 64
    attention_block_size: int = 64

    def __post_init__(self):
        for name in ("num_threads", "block_rows", "attention_block_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")


_default_config = EngineConfig()


def get_config() -> EngineConfig:
    """Return the process-wide default configuration."""
    return _default_config


def set_config(config: EngineConfig) -> EngineConfig:
    """
    Replace the process-wide default configuration.

    Returns:
        The previous default, so callers can restore it.
    """
    global _default_config
    previous = _default_config
    _default_config = config
    return previous
