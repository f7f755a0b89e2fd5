"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan book.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Supplies conserved, escrow equals outstanding collateral
2. atomicity.py - A failed transition leaves no trace
3. reentrancy.py - Nested transitions rejected, records updated before payouts
4. exclusivity.py - Funded/cancelled and repaid/claimed are mutually exclusive
5. temporal.py - Due dates, strict claim window, rebate monotonicity

These tests use hypothesis for property-based testing.
"""
