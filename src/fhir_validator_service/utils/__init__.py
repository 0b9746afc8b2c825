"""Shared utilities for the validator service wrapper."""
