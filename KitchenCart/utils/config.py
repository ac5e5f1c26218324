"""Environment-driven settings for the browser automation layer."""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

_FALSE_VALUES = {"0", "false", "no", "off"}


def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


@dataclass
class BrowserSettings:
    headless: bool = True
    executable_path: Optional[str] = None
    timeout_seconds: int = 30
    navigation_timeout_seconds: int = 30
    two_fa_timeout_seconds: int = 420
    stealth: bool = True
    extra_args: list = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "BrowserSettings":
        extra = os.getenv("KITCHENCART_CHROMIUM_ARGS")
        return cls(
            headless=_as_bool(os.getenv("KITCHENCART_HEADLESS"), True),
            executable_path=os.getenv("KITCHENCART_BROWSER_PATH") or None,
            timeout_seconds=_env_int("KITCHENCART_BROWSER_TIMEOUT", 30),
            navigation_timeout_seconds=_env_int("KITCHENCART_NAVIGATION_TIMEOUT", 30),
            two_fa_timeout_seconds=_env_int("KITCHENCART_TWO_FA_BROWSER_TIMEOUT", 420),
            stealth=_as_bool(os.getenv("KITCHENCART_STEALTH"), True),
            extra_args=extra.split() if extra else [],
        )


def notification_webhook_url() -> Optional[str]:
    return os.getenv("TWO_FA_NOTIFICATION_WEBHOOK_URL") or None


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()
