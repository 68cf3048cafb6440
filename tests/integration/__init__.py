"""Integration tests for the campus ballot service.

This package contains integration tests that run against a deployed stack
(API, PostgreSQL and Redis), including:

- End-to-end ballot flow tests
- Double-voting and concurrent submission tests
- Database consistency checks

All tests are marked ``docker`` and only run with ``pytest --docker``.
"""
