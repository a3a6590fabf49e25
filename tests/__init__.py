"""Test suite for the pytest-world package.

This package contains unit and integration tests validating the wait
engine, interaction targets, hook pipeline, scenario execution and
pytest integration.
"""
