"""Calendar sync queue and appointment reminders for coaching sessions."""

__version__ = "1.0.0"
