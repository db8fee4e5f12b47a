# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Settings for the orchestration core and how they are loaded.

Values are layered, lowest precedence first: model defaults, a YAML config
file, a .env file, then the process environment. Environment keys carry the
DOCKHAND_ prefix, e.g. DOCKHAND_DEFAULT_TIMEOUT=30.
"""

import os
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "DOCKHAND_"


class Settings(BaseModel):
    """
    Tunables for the engine driver, the reconciler and the dispatcher.
    """
    model_config = ConfigDict(extra="ignore")

    engine_binary: str = "docker"
    default_timeout: float = Field(default=60.0, gt=0)
    stop_grace_period: int = Field(default=10, ge=0)
    status_retry_attempts: int = Field(default=3, ge=1)
    status_retry_wait: float = Field(default=0.5, ge=0)
    verify_after_success: bool = True
    max_workers: int = Field(default=8, ge=1)
    log_level: str = "WARNING"
    managed_label: str = "dockhand.managed"


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data


def _prefixed(values: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """
    Picks DOCKHAND_* keys out of a mapping and strips the prefix.
    """
    picked = {}
    for key, value in values.items():
        if value is None or not key.upper().startswith(ENV_PREFIX):
            continue
        picked[key[len(ENV_PREFIX):].lower()] = value
    return picked


def load_settings(config_file: Optional[str] = None,
                  env_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds Settings from the layered sources.

    Args:
        config_file: Optional YAML file whose top-level keys are field names.
        env_file: Optional .env file read with python-dotenv.
        environ: Environment mapping, os.environ when omitted.

    Returns:
        Validated Settings.
    """
    values: Dict[str, Any] = {}
    if config_file:
        values.update(_read_yaml(config_file))
    if env_file and os.path.exists(env_file):
        values.update(_prefixed(dotenv_values(env_file)))
    values.update(_prefixed(os.environ if environ is None else environ))
    return Settings(**values)
