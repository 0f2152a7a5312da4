"""Load config from RELAY_CONFIG_PATH or return the default.

``load_config()`` is memoised with ``functools.lru_cache`` so the file is read
and parsed at most once per process.  Call ``load_config.cache_clear()`` to
force a re-read (useful in tests and when ``RELAY_CONFIG_PATH`` changes at
runtime).
"""

from __future__ import annotations

import functools
import json
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .schema import DEFAULT_CONFIG, RelayConfig


class _Env(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", extra="ignore")
    config_path: Optional[str] = None
    data_dir: Optional[str] = None
    credential_secret: Optional[str] = None


_env: Optional[_Env] = None


def _get_env() -> _Env:
    global _env
    if _env is None:
        _env = _Env()
    return _env


def credential_secret() -> Optional[str]:
    """Fernet key from ``RELAY_CREDENTIAL_SECRET``, if set."""
    secret = _get_env().credential_secret
    return secret.strip() if secret and secret.strip() else None


@functools.lru_cache(maxsize=1)
def load_config() -> RelayConfig:
    """Load config from RELAY_CONFIG_PATH if set and valid; else DEFAULT_CONFIG.

    ``RELAY_DATA_DIR`` overrides ``data_dir`` either way.  Result is cached for
    the lifetime of the process.
    """
    env = _get_env()
    config = DEFAULT_CONFIG
    path = env.config_path
    if path and path.strip():
        p = Path(path).expanduser().resolve()
        if p.is_file():
            data = json.loads(p.read_text(encoding="utf-8"))
            config = RelayConfig.model_validate(data)
    if env.data_dir and env.data_dir.strip():
        config = config.model_copy(update={"data_dir": str(Path(env.data_dir).expanduser())})
    return config
