"""Background job scheduling for the agent platform."""
