from smime_gate.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
