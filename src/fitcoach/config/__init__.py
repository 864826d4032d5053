from fitcoach.config.settings import ConfigError, Settings, load_settings

__all__ = ["Settings", "ConfigError", "load_settings"]
