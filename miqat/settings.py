"""User preferences persisted between runs: method, manual place, reminders."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, replace

from miqat.notifier import DEFAULT_LEADS
from miqat.prayer_api import DEFAULT_METHOD

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".miqat")
CONFIG_FILE = os.path.join(CONFIG_DIR, "settings.json")


@dataclass(frozen=True)
class Settings:
    method: int = DEFAULT_METHOD
    city: str = None
    country: str = None
    reminder_minutes: tuple = field(default=DEFAULT_LEADS)
    auto_location: bool = True

    @property
    def has_manual_place(self) -> bool:
        return bool(self.city and self.country)


def save_settings(settings: Settings) -> None:
    """Write settings to the config file."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    data = asdict(settings)
    data["reminder_minutes"] = list(settings.reminder_minutes)
    with open(CONFIG_FILE, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_settings() -> Settings:
    """Load saved settings, or defaults if there are none or the file is unreadable."""
    if not os.path.isfile(CONFIG_FILE):
        return Settings()
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Settings(
            method=int(data.get("method", DEFAULT_METHOD)),
            city=data.get("city") or None,
            country=data.get("country") or None,
            reminder_minutes=tuple(int(m) for m in data.get("reminder_minutes", DEFAULT_LEADS)),
            auto_location=bool(data.get("auto_location", True)),
        )
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", CONFIG_FILE, exc)
        return Settings()


def clear_manual_place() -> None:
    """Forget the saved manual place, keeping other preferences."""
    if not os.path.isfile(CONFIG_FILE):
        return
    save_settings(replace(load_settings(), city=None, country=None))
