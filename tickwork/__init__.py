"""tickwork — in-process recurring task scheduler."""
