"""Storage-facing services used by the sync algorithms and the status views."""
