"""Server-side stores and the realtime room broker."""
