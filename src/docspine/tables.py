"""Physical table name resolution for sharded and time-partitioned entities.

A table template may contain placeholders:

==================  ===================================================
Placeholder         Replaced with
==================  ===================================================
``{{accountId}}``   The first shard key (alias of ``{{0}}``)
``{{0}}..{{n}}``    Positional shard keys
``{{year}}``        Current year, four digits
``{{month}}``       Current month, two digits
==================  ===================================================

Time placeholders resolve against local wall-clock time at call time, so the
same template maps to a new physical table when the month or year rolls
over. Without shard keys the template is returned unchanged.

Example::

    >>> resolve_table_name("events_{{year}}_{{0}}", "acct1", now=datetime(2026, 3, 1))
    'events_2026_acct1'
"""

from __future__ import annotations

from datetime import datetime

ACCOUNT_PLACEHOLDER = "{{accountId}}"
YEAR_PLACEHOLDER = "{{year}}"
MONTH_PLACEHOLDER = "{{month}}"


def resolve_table_name(template: str, *keys: str, now: datetime | None = None) -> str:
    """Resolve a table template against shard keys and the current time."""
    if not keys:
        return template

    name = template.replace(ACCOUNT_PLACEHOLDER, "{{0}}")
    for idx, key in enumerate(keys):
        name = name.replace(f"{{{{{idx}}}}}", key)

    now = now or datetime.now()
    name = name.replace(YEAR_PLACEHOLDER, now.strftime("%Y"))
    name = name.replace(MONTH_PLACEHOLDER, now.strftime("%m"))
    return name


__all__ = ["resolve_table_name"]
