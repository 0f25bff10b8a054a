"""Environment-driven configuration loading."""

import os
from typing import Dict, Mapping, Optional

from delivery_kernel.models.config import KernelConfig

ENV_PREFIX = "DELIVERY_KERNEL_"

# Environment variable suffix -> (config section or None for top level, field)
ENV_FIELDS = {
    "DATABASE_PATH": (None, "database_path"),
    "LOG_FORMAT": (None, "log_format"),
    "LOG_LEVEL": (None, "log_level"),
    "EXPLORATION_RATE": ("selector", "exploration_rate"),
    "CANDIDATE_RATE": ("selector", "candidate_rate"),
    "MAX_WRITE_RETRIES": ("selector", "max_write_retries"),
    "CHECKPOINT_INTERVAL_SECONDS": ("checkpoint", "interval_seconds"),
    "CHECKPOINT_SCHEDULE": ("checkpoint", "schedule"),
    "MAX_CHECKPOINTS_PER_AGENT": ("checkpoint", "max_checkpoints_per_agent"),
}


def load_config(environ: Optional[Mapping[str, str]] = None) -> KernelConfig:
    """
    Build a KernelConfig from DELIVERY_KERNEL_* environment variables.

    Values are passed to the models as strings so pydantic does the coercion;
    a malformed value raises pydantic.ValidationError. Unset or empty
    variables keep their model defaults.
    """
    env = os.environ if environ is None else environ

    data: Dict[str, object] = {}
    for suffix, (section, field) in ENV_FIELDS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if not raw:
            continue
        target = data if section is None else data.setdefault(section, {})
        target[field] = raw

    return KernelConfig.model_validate(data)
