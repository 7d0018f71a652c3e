"""Background sync and capture engine."""
