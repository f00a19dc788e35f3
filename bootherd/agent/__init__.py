"""Agent that runs on every managed device."""
