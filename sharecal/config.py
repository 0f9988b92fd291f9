"""
Configuration parser for sharecal.

Handles TOML file parsing and secure secret retrieval via external programs.
"""

import tomllib
import subprocess
import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from .debug import debug_print


def _debug_print(msg: str) -> None:
    debug_print("CONFIG", msg)


def run_password_program(password_program: str, key: str) -> str:
    """Look up one secret with the configured password program."""
    try:
        result = subprocess.run(
            [password_program, key],
            capture_output=True,
            text=True,
            timeout=30
        )
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"Password program timed out for key '{key}'")
    except FileNotFoundError:
        raise RuntimeError(f"Password program not found: {password_program}")

    if result.returncode != 0:
        raise RuntimeError(f"Password program failed for key '{key}': {result.stderr}")
    # pass(1) prints the secret on the first line
    return result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""


@dataclass
class StoreConfig:
    """Which event store to use and how to reach it."""
    backend: str = "json"           # "json" or "postgrest"
    url: str = ""                   # PostgREST base URL, e.g. https://xyz.supabase.co
    api_key_key: str = ""           # password-program key holding the API key
    json_path: Optional[Path] = None
    timeout: float = 10.0           # per-request timeout in seconds

    _api_key: Optional[str] = field(default=None, repr=False)

    def get_api_key(self, password_program: str) -> str:
        """Retrieve the API key using the configured password program."""
        if self._api_key is None:
            if not self.api_key_key:
                raise RuntimeError("Store.api_key_key is not configured")
            self._api_key = run_password_program(password_program, self.api_key_key)
        return self._api_key


@dataclass
class EngineConfig:
    """Materialization and refresh behaviour."""
    recurrence_cap: int = 100           # hard limit on instances per recurring event
    default_repeat_years: int = 1       # span when a recurring event has no end date
    refresh_debounce: float = 0.5       # seconds to coalesce change notifications
    poll_interval: float = 30.0         # seconds between change polls (REST store)


@dataclass
class SharingConfig:
    accept_timeout: float = 5.0         # bounded wait for accept/decline writes


@dataclass
class NotificationsConfig:
    push_enabled: bool = False
    push_url: str = "https://exp.host/--/api/v2/push/send"


@dataclass
class ICSSubscriptionConfig:
    """An external ICS feed imported into the user's own events."""
    name: str
    url: str
    color: str = "#34a853"  # Default Google Green


@dataclass
class Config:
    """Main configuration container for sharecal."""

    user_id: str
    password_program: str = "/usr/bin/pass"
    store: StoreConfig = field(default_factory=StoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    sharing: SharingConfig = field(default_factory=SharingConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    ics_subscriptions: list[ICSSubscriptionConfig] = field(default_factory=list)

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the default configuration file path."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
        return Path(xdg_config) / 'sharecal' / 'sharecal.toml'

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """Load configuration from TOML file."""
        if config_path is None:
            config_path = cls.get_default_config_path()

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'rb') as f:
            data = tomllib.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        """Build a Config from already-parsed TOML data."""
        general = data.get('General', {})
        user_id = general.get('user_id', '')
        if not user_id:
            raise ValueError("[General] user_id is required")

        store_data = data.get('Store', {})
        json_path = store_data.get('json_path')
        store = StoreConfig(
            backend=store_data.get('backend', StoreConfig.backend),
            url=store_data.get('url', ''),
            api_key_key=store_data.get('api_key_key', ''),
            json_path=Path(os.path.expanduser(json_path)) if json_path else None,
            timeout=float(store_data.get('timeout', StoreConfig.timeout)),
        )
        if store.backend not in ("json", "postgrest"):
            raise ValueError(f"[Store] backend must be 'json' or 'postgrest', got {store.backend!r}")
        if store.backend == "postgrest" and not store.url:
            raise ValueError("[Store] url is required for the postgrest backend")

        engine_data = data.get('Engine', {})
        engine = EngineConfig(
            recurrence_cap=engine_data.get('recurrence_cap', EngineConfig.recurrence_cap),
            default_repeat_years=engine_data.get('default_repeat_years', EngineConfig.default_repeat_years),
            refresh_debounce=engine_data.get('refresh_debounce', EngineConfig.refresh_debounce),
            poll_interval=engine_data.get('poll_interval', EngineConfig.poll_interval),
        )
        if engine.recurrence_cap < 1:
            raise ValueError("[Engine] recurrence_cap must be at least 1")

        sharing_data = data.get('Sharing', {})
        sharing = SharingConfig(
            accept_timeout=float(sharing_data.get('accept_timeout', SharingConfig.accept_timeout)),
        )

        notifications_data = data.get('Notifications', {})
        notifications = NotificationsConfig(
            push_enabled=bool(notifications_data.get('push_enabled', False)),
            push_url=notifications_data.get('push_url', NotificationsConfig.push_url),
        )

        # Parse ICS subscriptions
        # Supports both [Subscription.Name] and [Subscription] with nested sub-tables
        ics_subscriptions = []
        for key, value in data.items():
            if key.startswith('Subscription.') and isinstance(value, dict):
                entries = [(key.split('.', 1)[1], value)]
            elif key == 'Subscription' and isinstance(value, dict):
                entries = [(k, v) for k, v in value.items() if isinstance(v, dict)]
            else:
                continue
            for sub_id, sub_value in entries:
                ics_subscriptions.append(ICSSubscriptionConfig(
                    name=sub_value.get('name', sub_id),
                    url=sub_value.get('url', ''),
                    color=sub_value.get('color', '#34a853'),
                ))
        _debug_print(f"Total ICS subscriptions found: {len(ics_subscriptions)}")

        return cls(
            user_id=user_id,
            password_program=general.get('password_program', '/usr/bin/pass'),
            store=store,
            engine=engine,
            sharing=sharing,
            notifications=notifications,
            ics_subscriptions=ics_subscriptions,
        )
