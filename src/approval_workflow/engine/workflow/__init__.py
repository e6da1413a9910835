"""Approval workflow domain.

This package holds the process graph, the task ledger and the executor that
drives flow instances through approval, CC and condition nodes. Modules are
imported directly; nothing is re-exported here.
"""

__all__: list[str] = []
