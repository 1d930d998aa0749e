"""
Loki - per-guild feature scheduler for Discord

Loki runs a handful of small, time-driven community features for every
server it is in:

- **Meme contest**: a weekly "best meme" vote decided by total reactions,
  with a reminder two days before the results
- **Nickname lottery**: renames every member from a shared pool at random
  intervals between 30 minutes and 5 days
- **Timeout statistics**: counts how often and for how long members are
  timed out, optionally announcing each timeout
- **Event notifications**: users can subscribe to bot events and receive
  them as direct messages
- **Glue**: text responses and named scoreboards

All feature state lives in one record per guild and is only changed through
the timer scheduler's serialized mutation path.

Usage:
    from loki.main import main
    main()
"""

__version__ = "0.1.0"
