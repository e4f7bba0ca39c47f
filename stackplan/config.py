"""
Settings from ``stackplan.yaml``.

Looked up in the working directory unless a path is given. Every key is
optional::

    stack: site
    state_dir: .stackplan
    parallelism: 4
    operation_timeout: 1800
    lease_ttl: 3600
    providers:
      aws:
        factory: stackplan.providers.local:LocalCloud
        options:
          region: us-west-2
      aws.us_east_1:
        options:
          region: us-east-1
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from stackplan.errors import ValidationError
from stackplan.providers.registry import DEFAULT_FACTORY

CONFIG_FILE = "stackplan.yaml"


@dataclass
class Settings:
    stack: str = "default"
    state_dir: str = ".stackplan"
    parallelism: int = 4
    operation_timeout: float = 1800.0
    lease_ttl: float = 3600.0
    default_factory: str = DEFAULT_FACTORY
    providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    source: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "") -> "Settings":
        known = {f for f in cls.__dataclass_fields__ if f != "source"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"{source or 'config'}: unknown setting(s): {', '.join(unknown)}")
        settings = cls(source=source, **data)
        if settings.parallelism < 1:
            raise ValidationError(f"{source or 'config'}: parallelism must be at least 1")
        if settings.operation_timeout <= 0:
            raise ValidationError(f"{source or 'config'}: operation_timeout must be positive")
        for name, entry in settings.providers.items():
            if not isinstance(entry, dict):
                raise ValidationError(f"{source or 'config'}: provider {name!r} must be a mapping")
        return settings


def load_settings(path: Optional[str] = None) -> Settings:
    """Read settings; a missing default file yields defaults, a missing explicit one fails."""
    if path is None:
        if not os.path.exists(CONFIG_FILE):
            return Settings()
        path = CONFIG_FILE
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(f"cannot read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{path}: expected a mapping at the top level")
    return Settings.from_dict(data, source=path)
