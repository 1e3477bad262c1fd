"""Identity store and check-in recorder implementations."""
