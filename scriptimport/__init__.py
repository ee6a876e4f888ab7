"""
Script Import

Applies a tree of generated SQL unit files to a SQL Server database in a
deterministic, auditable order.

Supports:
- Dev and Prod folder profiles with object-type and schema filters
- Text-level rewriting for the target environment (variables, filegroups,
  FILESTREAM, Always Encrypted, contained users, secrets)
- Transient-fault retry with exponential backoff
- Fixpoint retry for programmability objects
- Foreign-key bracketing and dependency ordering for data loads
"""

__version__ = "0.1.0"
