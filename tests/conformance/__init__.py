"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the market engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Share conservation, cash and parameter bounds
2. atomicity.py - Rejected operations leave no trace
3. idempotency.py - Reads and snapshot round trips change nothing

These tests use hypothesis for property-based testing.
"""
