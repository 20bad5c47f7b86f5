"""Core logic package: the agent application, its routes and per-turn state."""
