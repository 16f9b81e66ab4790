"""Realtime notification channel (server side)."""

from lockgate.realtime.hub import Connection, NotificationHub, dashboard_room

__all__ = ["Connection", "NotificationHub", "dashboard_room"]
