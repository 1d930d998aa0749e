"""
Utility functions and helpers for Loki.

- **logger.py**: Centralized logging configuration with colored console output
  and rotating per-session log files. Uses prompt_toolkit for console output.
- **clock.py**: Injectable wall clock and random source.
- **discord_utils.py**: Helpers shared by the command cogs.
"""
