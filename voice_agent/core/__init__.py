"""Per-call session state machine, turn taking and echo suppression."""
