"""Workflow automation engine: triggers, rules, queue, validators and runners.

Why not APScheduler / Celery / watchfiles-driven task frameworks?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every piece of engine state (pending triggers, rule history, the queue) lives
in small JSON documents under the state directory so an operator can read them
with ``cat`` and the daemon can resume after ``kill -9``.  A scheduler or broker
would keep that state in memory or behind a service, and the workloads are
external CLI processes that run one at a time anyway.  A heartbeat that
evaluates rules, enqueues, and drains one task per tick is the whole engine.
"""
