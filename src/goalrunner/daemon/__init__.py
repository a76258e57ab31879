"""Long-running daemon: triggers, heartbeat and autonomous queue draining."""
