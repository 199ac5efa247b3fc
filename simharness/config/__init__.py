from simharness.config.harness_config import (
    DEFAULT_DB_PATH,
    DEFAULT_MAX_RUNS,
    ENV_PREFIX,
    HarnessConfig,
)

__all__ = [
    "DEFAULT_DB_PATH",
    "DEFAULT_MAX_RUNS",
    "ENV_PREFIX",
    "HarnessConfig",
]
