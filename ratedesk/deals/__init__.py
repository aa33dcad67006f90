"""Deal lifecycle: orchestration, statistics and notifications."""
