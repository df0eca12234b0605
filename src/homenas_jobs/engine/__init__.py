"""Job execution and crash-recovery engine.

Why not APScheduler / Celery / a process supervisor?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Deciding *when* a backup runs belongs to cron on the NAS. This package owns
what happens once a run is requested:

- At most one live process per job, enforced by an in-memory table whose
  claim step never yields to the event loop, plus a per-job lock file that
  separate engine processes (cron ticks, boot-time recovery) share.
- argv-only invocation of rsync, tar and rclone built from validated job
  fields.
- Bounded live output for status polling and a bounded tail persisted with
  each history entry.
- Startup recovery of executions a crashed host left marked ``running``,
  relaunched with ``resumed_from`` / ``resumed_as`` lineage.

State lives in the dashboard's JSON config document, so a broker or a
database would be an extra moving part on a single box.
"""
