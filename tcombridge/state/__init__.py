"""Runtime state containers for the Tcom bridge."""
