"""
Runtime configuration.

`RuntimeConfig` is an explicit, immutable configuration value. It is built
once (usually via `RuntimeConfig.from_env()`) and handed to the
`NativeRuntime`, which every graph and tensor reaches through its storage.

Environment variables
---------------------
DYNGRAPH_GPU_COUNT
    Number of accelerator devices exposed by the runtime. Defaults to 0.
DYNGRAPH_MEMORY_LIMIT
    Per-device allocator capacity in bytes. Unset or empty means unlimited.
DYNGRAPH_DEBUG
    Opt-in debug mode ("0", "", "false" are off). Kernel failures then carry
    the full traceback and the runtime keeps a command log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

_FALSE_VALUES = ("0", "", "false", "False", "FALSE", "off", "no")


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "0") not in _FALSE_VALUES


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name, "")
    if raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Immutable runtime configuration.

    Attributes
    ----------
    gpu_count : int
        Number of accelerator devices (`gpu:0` .. `gpu:{gpu_count-1}`).
    memory_limit_bytes : Optional[int]
        Capacity of each device allocator, or None for unlimited.
    debug : bool
        Whether debug diagnostics are collected.
    """

    gpu_count: int = 0
    memory_limit_bytes: Optional[int] = None
    debug: bool = False

    def __post_init__(self) -> None:
        if int(self.gpu_count) < 0:
            raise ValueError(f"gpu_count must be >= 0, got {self.gpu_count}")
        if self.memory_limit_bytes is not None and int(self.memory_limit_bytes) < 0:
            raise ValueError(
                f"memory_limit_bytes must be >= 0, got {self.memory_limit_bytes}"
            )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RuntimeConfig":
        """
        Build a configuration from environment variables.

        Parameters
        ----------
        env : Optional[Mapping[str, str]]
            Mapping to read from. Defaults to `os.environ`.
        """
        env = os.environ if env is None else env
        return cls(
            gpu_count=_env_int(env, "DYNGRAPH_GPU_COUNT", 0) or 0,
            memory_limit_bytes=_env_int(env, "DYNGRAPH_MEMORY_LIMIT", None),
            debug=_env_flag(env, "DYNGRAPH_DEBUG"),
        )
