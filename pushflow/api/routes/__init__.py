from . import admin, notifications

__all__ = ["admin", "notifications"]
