"""Single-flight supervisor for external agent CLI jobs.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Exactly one agent process may run at a time, and the interesting work sits at
the process boundary rather than in the queue: building the prompt with
conversation context, resuming the agent's own session, enforcing a wall-clock
timeout with a terminate-then-kill escalation, and turning stdout into a
result envelope or a descriptive failure. A broker would add an operational
dependency to a single-machine, SQLite-only tool while all of the above would
still be custom task code. The claim -> run -> finalize -> deliver loop in
``worker.py`` over the SQLite job table is the right size for this scope.
"""
