"""Task queue, workflow decomposition, cron schedules, and the dispatch cycle.

Everything here runs on one SQLite database. Callers may overlap freely:
each state change is a single conditional UPDATE keyed on the current
status, so a losing caller observes a no-op instead of a double dispatch.
The engine never waits on agents. Execution is handed to an
``AgentExecutor`` and observed on later ticks via ``poll_completion``.
"""
