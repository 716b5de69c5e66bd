"""
Agent configuration.

Configuration is layered: built-in defaults, then JSON config files (a file,
or every *.json file of a directory in alphabetical order), then command-line
flags / environment variables applied by bootstrap.py.

Example config file:

    {
        "log_level": "DEBUG",
        "root": "/var/lib/ebs-backend",
        "wait_timeout": 600,
        "driver_options": {"ebs.defaultvolumesize": "8G"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from ebs_backend.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ROOT = "/var/lib/ebs-backend"


@dataclass
class AgentConfig:
    log_level: str = "INFO"
    enable_syslog: bool = False
    syslog_facility: str = "LOCAL0"
    root: str = DEFAULT_ROOT
    endpoint_url: str = ""
    wait_timeout: Optional[float] = None
    driver_options: Dict[str, str] = field(default_factory=dict)

    # Config files merged into this config, in order.
    files: List[str] = field(default_factory=list)

    def merge(self, other: "AgentConfig") -> "AgentConfig":
        """Return a new config with the values set in `other` laid over ours."""
        defaults = AgentConfig()
        result = replace(self, driver_options=dict(self.driver_options), files=list(self.files))

        for name in ("log_level", "syslog_facility", "root", "endpoint_url", "wait_timeout"):
            value = getattr(other, name)
            if value != getattr(defaults, name):
                setattr(result, name, value)
        if other.enable_syslog:
            result.enable_syslog = True

        result.driver_options.update(other.driver_options)
        result.files.extend(other.files)
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "AgentConfig":
        unknown = set(data) - {
            "log_level", "enable_syslog", "syslog_facility", "root",
            "endpoint_url", "wait_timeout", "driver_options",
        }
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {sorted(unknown)}", error_code="INVALID_CONFIG")

        wait_timeout = data.get("wait_timeout")
        return cls(
            log_level=str(data.get("log_level", "INFO")),
            enable_syslog=bool(data.get("enable_syslog", False)),
            syslog_facility=str(data.get("syslog_facility", "LOCAL0")),
            root=str(data.get("root", DEFAULT_ROOT)),
            endpoint_url=str(data.get("endpoint_url", "")),
            wait_timeout=None if wait_timeout is None else float(wait_timeout),
            driver_options={str(k): str(v) for k, v in (data.get("driver_options") or {}).items()},
        )


def load_config_file(path: str) -> AgentConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Error loading {path}: {e}", error_code="INVALID_CONFIG") from e

    if not isinstance(data, dict):
        raise ValidationError(f"Error loading {path}: top level must be an object", error_code="INVALID_CONFIG")

    config = AgentConfig.from_dict(data)
    config.files.append(os.path.normpath(path))
    return config


def load_config_dir(path: str) -> AgentConfig:
    result = AgentConfig()
    names = sorted(n for n in os.listdir(path) if n.endswith(".json"))
    for name in names:
        full = os.path.join(path, name)
        if os.path.isdir(full):
            continue
        result = result.merge(load_config_file(full))
    if not names:
        logger.warning("No configuration files found in %s", path)
    return result


def load_config(path: str) -> AgentConfig:
    """Load a config file, or every *.json file of a directory."""
    if os.path.isdir(path):
        return load_config_dir(path)
    return load_config_file(path)
