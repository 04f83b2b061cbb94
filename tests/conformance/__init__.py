"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending core.

The tests are organized by invariant:
1. test_invariants.py - Pool solvency and debt bookkeeping
2. test_atomicity.py - All-or-nothing operations
3. test_idempotency.py - Index accrual at a repeated timestamp
4. test_canonicalization.py - Content-addressable batch identity
5. test_temporal.py - Time only moves forward

These tests use hypothesis for property-based testing.
"""
