"""pullstats — tag and manifest pull statistics for a container registry.

Consumes ``pull_repo`` entries from the registry audit log and folds them into
two aggregate tables in DuckDB: per-tag and per-manifest pull counters with
last-access timestamps.  A single worker holds the run lock at a time and
advances a durable checkpoint only after each batch has committed.
"""

__version__ = "0.1.0"
