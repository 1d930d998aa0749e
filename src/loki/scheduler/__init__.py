"""
Deadline scheduling for the time-driven features.

- **timer_scheduler.py**: min-heap of one deadline per (guild, feature),
  per-guild mutation locks, boot-time restoration of deadlines from the
  persisted records.
"""
