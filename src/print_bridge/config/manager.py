from pathlib import Path
import copy
import toml
import json

DEFAULTS_FILE = Path(__file__).parent / 'defaults.toml'

SEARCH_PATHS = (
    Path('/app/config/config.toml'),
    Path.home() / '.print_bridge' / 'config.toml',
    Path('config.toml'),
)


def find_config_file():
    """First existing config file in search order, or None."""
    for path in SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_defaults() -> dict:
    return toml.load(DEFAULTS_FILE)


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Manages configuration loading and access."""

    def __init__(self, config_file: str = None, use_defaults: bool = True):
        """
        Initialize ConfigManager.

        Args:
            config_file: Path to config file. If None, uses default locations.
            use_defaults: Fall back to the shipped defaults.toml for missing keys.
        """
        if config_file is None:
            config_file = find_config_file()

        self.config_file = Path(config_file) if config_file else None
        self.defaults = load_defaults() if use_defaults else {}
        self.config = {}
        if self.config_file:
            self.load_config()

    def exists(self):
        """Check if config file exists."""
        return bool(self.config_file and self.config_file.exists())

    def load_config(self):
        """Load configuration from file."""
        if not self.config_file or not self.config_file.exists():
            return

        if self.config_file.suffix == '.toml':
            self.config = toml.load(self.config_file)
        elif self.config_file.suffix == '.json':
            with open(self.config_file, 'r') as f:
                self.config = json.load(f)

    def save_config(self):
        """Save configuration to file."""
        if not self.config_file:
            raise ValueError("No config file specified")

        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        if self.config_file.suffix == '.toml':
            with open(self.config_file, 'w') as f:
                toml.dump(self.config, f)
        elif self.config_file.suffix == '.json':
            with open(self.config_file, 'w') as f:
                json.dump(self.config, f, indent=4)

    def get(self, key: str, default=None):
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'bridge.dispatcher_url')
            default: Default value if key not found in the file or the defaults

        Returns:
            Configuration value or default
        """
        for source in (self.config, self.defaults):
            value = source
            for k in key.split('.'):
                if isinstance(value, dict):
                    value = value.get(k)
                else:
                    value = None
                if value is None:
                    break
            if value is not None:
                return value
        return default

    def set(self, key: str, value, save: bool = True):
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'bridge.device_id')
            value: Value to set
            save: Write the file afterwards when one is configured
        """
        keys = key.split('.')
        config = self.config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value
        if save and self.config_file:
            self.save_config()

    def update(self, updates: dict):
        """Update multiple configuration values."""
        self.config = _merge(self.config, updates)
        if self.config_file:
            self.save_config()
