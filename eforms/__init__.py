from .constants import APP_NAME, VERSION

__all__ = ["APP_NAME", "VERSION"]
