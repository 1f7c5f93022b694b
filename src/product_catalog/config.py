from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

URL_VARIABLE = "CATALOG_SERVICE_URL"
KEY_VARIABLE = "CATALOG_SERVICE_KEY"


@dataclass(frozen=True, slots=True)
class ServiceSettings:
    """Connection details for the remote data service."""

    url: str
    api_key: str
    timeout: float = 15.0

    @classmethod
    def from_env(cls, env_path: Path = Path(".env")) -> "ServiceSettings":
        url = _read_setting(URL_VARIABLE, env_path)
        api_key = _read_setting(KEY_VARIABLE, env_path)
        missing = [
            name for name, value in ((URL_VARIABLE, url), (KEY_VARIABLE, api_key)) if not value
        ]
        if missing:
            raise ValueError(f"Missing settings: {', '.join(missing)}")
        return cls(url=url, api_key=api_key)  # type: ignore[arg-type]


def _normalize(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip().strip('"').strip("'")
    return normalized or None


def _read_setting(name: str, env_path: Path) -> Optional[str]:
    value = _normalize(os.getenv(name))
    if value:
        return value

    if not env_path.exists():
        return None

    try:
        for line in env_path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if "=" not in stripped:
                continue
            key, raw_value = stripped.split("=", 1)
            if key.strip() == name:
                return _normalize(raw_value)
    except OSError:
        logger.debug("Unable to read %s for %s", env_path, name, exc_info=True)
    return None
