"""Calendar service interfaces and implementations."""

from .base import BaseCalendarService
from .google import GoogleCalendarService

__all__ = [
    'BaseCalendarService',
    'GoogleCalendarService',
]
