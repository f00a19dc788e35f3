"""Device state, orchestration and fleet coordination."""
