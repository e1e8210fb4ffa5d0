"""
Operational tools for DocDB.

- smuggler_cli: export / import / purge from the command line
"""
