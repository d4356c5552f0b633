"""TCP framing, queueing and session routing."""
