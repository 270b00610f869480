"""
Sofa SDK Test Suite.

This package contains:
- unit/: Unit tests (no server, mocked HTTP and in-memory change feeds)
- integration/: Database façade tests against an in-process fake server
"""
