"""Configuration: agent and step definitions, tool profiles, runtime settings."""
