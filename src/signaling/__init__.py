"""Room-scoped signaling relay and its HTTP API."""
