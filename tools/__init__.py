from .notification_tools import NotificationTools

__all__ = ["NotificationTools"]
