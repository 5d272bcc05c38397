"""
Test suite for Cardsmith.

This package contains unit tests for the template model, script engine,
text shaper, compositor and render driver, plus end-to-end CLI tests.
"""
