"""staged-load-foundry test suite.

Helpers for building source feeds and reading targets live in helpers.py.
"""
