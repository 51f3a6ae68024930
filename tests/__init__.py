"""
Test suite for loadcheck.

This package contains:
- unit/: Fast tests driven by fake HTTP sessions and fake clocks
- integration/: Full runs against a live Flask target server
"""
