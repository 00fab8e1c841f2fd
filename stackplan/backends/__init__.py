from typing import Optional

from stackplan.backends.base import Backend
from stackplan.config import PlannerConfig

BACKENDS = ("aws", "memory")


def get_backend(name: str, config: PlannerConfig, state_path: Optional[str] = None) -> Backend:
    """Instantiate a backend by name. boto3 is only imported for ``aws``."""
    if name == "memory":
        from stackplan.backends.memory import InMemoryBackend
        return InMemoryBackend(region=config.region, state_path=state_path)
    if name == "aws":
        from stackplan.backends.aws import AwsBackend
        return AwsBackend(config)
    raise ValueError(f"unknown backend '{name}' (expected one of: {', '.join(BACKENDS)})")
