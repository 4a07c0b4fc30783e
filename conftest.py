"""
Test collection root.

Tests import the package as `src.dyngraph`, so the repository root has to be
importable. Pytest puts the directory of this file on `sys.path` when it is
collected.
"""
