"""
Test helper utilities for FlowSense testing.

This module provides reusable utilities for:
- Generating synthetic reading streams and flow profiles
- Stub classifier backends that record their calls
"""
