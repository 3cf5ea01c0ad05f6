"""Subscription purchase workflow: catalog, orchestration and entitlements."""
