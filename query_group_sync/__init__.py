"""
Query Group Sync - Keep directory group membership in line with a query stored on the group.

Each managed group carries a membership query in one of its custom attribute slots.
This package resolves that query against the directory, diffs the result with the
group's current members and applies the additions and removals.
"""

__version__ = "1.0.0"
__author__ = "Query Group Sync Team"
